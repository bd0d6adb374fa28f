from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func as sa_func

from shared.db import User, UserEmail, utcnow
from shared.errors import ServiceError
from services.auth_context import (
    AuthContext,
    find_user_by_email,
    get_membership,
    hash_password,
    issue_session_token,
    normalize_email,
    require_tenant_admin,
    verify_password,
)
from services.email_service import send_recovery_verification_email

logger = logging.getLogger(__name__)

RECOVERY_TOKEN_TTL = timedelta(hours=24)
MIN_PASSWORD_LENGTH = 8


def signup(db, *, email: str, password: str, first_name: Optional[str] = None, last_name: Optional[str] = None) -> User:
    email = normalize_email(email)
    if not email or not password:
        raise ServiceError("email and password are required", 400)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ServiceError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)
    if find_user_by_email(db, email):
        raise ServiceError("User already exists", 409)
    user = User(email=email, password_hash=hash_password(password), first_name=first_name, last_name=last_name)
    db.add(user)
    db.flush()
    db.add(UserEmail(user_id=user.id, email=email, is_primary=True, verified=False))
    db.commit()
    return user


def login(db, *, email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    if not email or not password:
        raise ServiceError("email and password are required", 400)
    user = find_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        raise ServiceError("Invalid credentials", 401)
    token, expires_at = issue_session_token(user)
    if not token:
        raise ServiceError("Session signing is not configured", 500)
    memberships = [
        {"tenant_id": m.tenant_id, "role": m.role}
        for m in user.memberships
        if m.active
    ]
    return {
        "user_id": user.id,
        "email": user.email,
        "auth_token": token,
        "expires_at": expires_at,
        "memberships": memberships,
    }


def admin_reset_password(db, *, actor: AuthContext, user_id: str, tenant_id: str, new_password: str) -> Dict[str, Any]:
    if not user_id or not tenant_id or not new_password:
        raise ServiceError("Missing required fields", 400)
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ServiceError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)
    try:
        require_tenant_admin(db, actor.user_id, tenant_id)
    except ServiceError as exc:
        raise ServiceError("Forbidden", 403) from exc
    if not get_membership(db, user_id, tenant_id):
        raise ServiceError("Target user is not a member of this tenant", 400)
    user = db.query(User).filter_by(id=user_id).one_or_none()
    if not user:
        raise ServiceError("Target user is not a member of this tenant", 400)
    user.password_hash = hash_password(new_password)
    db.commit()
    logger.info("Password reset for user %s by %s in tenant %s", user_id, actor.user_id, tenant_id)
    return {"success": True}


def send_recovery_email_verification(db, *, actor: AuthContext, recovery_email: str, origin: str) -> Dict[str, Any]:
    recovery_email = normalize_email(recovery_email)
    if not recovery_email or "@" not in recovery_email:
        raise ServiceError("Invalid recovery email address", 400)
    taken = (
        db.query(User)
        .filter(sa_func.lower(User.recovery_email) == recovery_email)
        .filter(User.id != actor.user_id)
        .first()
    )
    if taken:
        raise ServiceError("This email is already used as a recovery email by another account", 400)

    user = actor.user
    token = str(uuid.uuid4())
    user.recovery_email = recovery_email
    user.recovery_email_verified = False
    user.recovery_email_token = token
    user.recovery_email_token_expires_at = utcnow() + RECOVERY_TOKEN_TTL
    db.commit()

    sent, error = send_recovery_verification_email(
        to_email=recovery_email,
        link=f"{origin}/verify-recovery-email?token={token}",
    )
    if not sent:
        raise ServiceError(error or "Failed to send verification email", 400)
    return {"success": True, "message": "Verification email sent"}


def verify_recovery_email(db, *, token: str) -> Dict[str, Any]:
    if not token:
        raise ServiceError("No verification token provided", 400)
    user = db.query(User).filter_by(recovery_email_token=token).one_or_none()
    if not user:
        raise ServiceError("Invalid or expired verification token", 400)
    if user.recovery_email_token_expires_at and user.recovery_email_token_expires_at < utcnow():
        raise ServiceError("Verification token has expired. Please request a new one.", 400)
    user.recovery_email_verified = True
    user.recovery_email_token = None
    user.recovery_email_token_expires_at = None
    db.commit()
    logger.info("Recovery email verified for user %s", user.id)
    return {
        "success": True,
        "message": "Recovery email verified successfully",
        "recoveryEmail": user.recovery_email,
    }
