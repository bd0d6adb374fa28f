from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import azure.functions as func
from sqlalchemy import func as sa_func

from shared.config import get_int_setting, get_setting
from shared.db import (
    ROLE_ADMIN,
    ROLE_OWNER,
    ROLE_SUPER_ADMIN,
    User,
    UserEmail,
    UserTenantMembership,
)
from shared.errors import ServiceError

ADMIN_ROLES = {ROLE_OWNER, ROLE_ADMIN, ROLE_SUPER_ADMIN}


@dataclass
class AuthContext:
    user_id: str
    email: str
    user: User


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return f"{salt}${hashed}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, hashed = stored.split("$", 1)
    check = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return secrets.compare_digest(check, hashed)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> Optional[bytes]:
    value = str(raw or "").strip()
    if not value:
        return None
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except ValueError:
        return None


def _session_secret() -> str:
    for key in ("AUTH_SESSION_SECRET", "APP_SESSION_SECRET", "JWT_SECRET", "SECRET_KEY"):
        value = str(get_setting(key) or "").strip()
        if value:
            return value
    return ""


def _session_ttl_seconds() -> int:
    parsed = get_int_setting("AUTH_SESSION_TTL_SECONDS", 12 * 60 * 60)
    return max(15 * 60, min(7 * 24 * 60 * 60, parsed))


def issue_session_token(user: User, ttl_seconds: Optional[int] = None) -> Tuple[Optional[str], Optional[str]]:
    """Return (token, expires_at_iso), or (None, None) when no signing secret is configured."""
    secret = _session_secret()
    email = normalize_email(user.email)
    if not secret or not email:
        return None, None
    expires_in = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else _session_ttl_seconds()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    payload = {"email": email, "user_id": str(user.id), "exp": int(expires_at.timestamp())}
    payload_bytes = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    return f"{_b64url_encode(payload_bytes)}.{_b64url_encode(digest)}", expires_at.isoformat()


def verify_session_token(token: str) -> Optional[Dict[str, Any]]:
    raw = str(token or "").strip()
    if "." not in raw:
        return None
    payload_part, sig_part = raw.split(".", 1)
    payload_bytes = _b64url_decode(payload_part)
    sig_bytes = _b64url_decode(sig_part)
    secret = _session_secret()
    if not payload_bytes or not sig_bytes or not secret:
        return None
    expected = hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, sig_bytes):
        return None
    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except ValueError:
        return None
    if not isinstance(payload, dict) or not payload.get("user_id"):
        return None
    try:
        exp_ts = int(payload.get("exp") or 0)
    except (TypeError, ValueError):
        return None
    if exp_ts <= int(datetime.now(timezone.utc).timestamp()):
        return None
    return payload


def extract_bearer_token(req: func.HttpRequest) -> str:
    headers = req.headers or {}
    auth_header = str(headers.get("Authorization") or headers.get("authorization") or "").strip()
    parts = auth_header.split(" ", 1)
    if len(parts) == 2 and parts[0].strip().lower() == "bearer":
        return parts[1].strip()
    return ""


def get_optional_auth(db, req: func.HttpRequest) -> Optional[AuthContext]:
    token = extract_bearer_token(req)
    if not token:
        return None
    payload = verify_session_token(token)
    if not payload:
        return None
    user = db.query(User).filter_by(id=str(payload["user_id"])).one_or_none()
    if not user:
        return None
    return AuthContext(user_id=user.id, email=normalize_email(user.email), user=user)


def require_auth(db, req: func.HttpRequest) -> AuthContext:
    if not extract_bearer_token(req):
        raise ServiceError("No authorization header", 401)
    auth = get_optional_auth(db, req)
    if not auth:
        raise ServiceError("Unauthorized", 401)
    return auth


def find_user_by_email(db, email: str) -> Optional[User]:
    normalized = normalize_email(email)
    if not normalized:
        return None
    user = db.query(User).filter(sa_func.lower(User.email) == normalized).one_or_none()
    if user:
        return user
    linked = db.query(UserEmail).filter(sa_func.lower(UserEmail.email) == normalized).one_or_none()
    if linked:
        return db.query(User).filter_by(id=linked.user_id).one_or_none()
    return None


def get_membership(db, user_id: str, tenant_id: str, *, active_only: bool = True) -> Optional[UserTenantMembership]:
    query = db.query(UserTenantMembership).filter_by(user_id=user_id, tenant_id=tenant_id)
    if active_only:
        query = query.filter(UserTenantMembership.active.is_(True))
    return query.one_or_none()


def require_membership(db, user_id: str, tenant_id: str) -> UserTenantMembership:
    membership = get_membership(db, user_id, tenant_id)
    if not membership:
        raise ServiceError("Access denied to this tenant", 403)
    return membership


def is_admin_role(role: Optional[str]) -> bool:
    return str(role or "").strip().lower() in ADMIN_ROLES


def require_tenant_admin(db, user_id: str, tenant_id: str) -> UserTenantMembership:
    membership = get_membership(db, user_id, tenant_id)
    if not membership or not is_admin_role(membership.role):
        raise ServiceError("Insufficient permissions", 403)
    return membership


def is_super_admin(db, user_id: str) -> bool:
    return (
        db.query(UserTenantMembership)
        .filter_by(user_id=user_id, role=ROLE_SUPER_ADMIN)
        .filter(UserTenantMembership.active.is_(True))
        .first()
        is not None
    )
