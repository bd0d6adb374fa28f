from __future__ import annotations

from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple
from urllib.parse import urlsplit

import azure.functions as func

from shared.config import get_flag, get_setting

ORIGIN_SETTINGS = ("ALLOWED_ORIGINS", "CORS", "CORS_ORIGIN", "CORS_ALLOWED_ORIGINS")
CREDENTIAL_SETTINGS = ("CORS_ALLOW_CREDENTIALS", "CORS_CREDENTIALS", "CORSCredentials")
LOCALHOST_SETTINGS = ("CORS_ALLOW_LOCALHOST", "ALLOW_LOCALHOST_CORS")
APP_HEADERS = ("Content-Type", "Authorization", "x-client-info", "apikey", "x-tenant-id")
LOCAL_HOSTS = {"localhost", "127.0.0.1"}


class CorsPolicy(NamedTuple):
    origins: Tuple[str, ...]
    allow_credentials: bool
    allow_localhost: bool

    @property
    def open(self) -> bool:
        """No restriction configured: "*", nothing at all, or only local dev origins."""
        explicit = [entry for entry in self.origins if entry != "*"]
        if "*" in self.origins or not explicit:
            return True
        return all(_is_local_origin(entry) for entry in explicit)


def _first_flag(names: Iterable[str], default: bool) -> bool:
    for name in names:
        if get_setting(name) is not None:
            return get_flag(name)
    return default


def load_cors_policy() -> CorsPolicy:
    raw = next((get_setting(name) for name in ORIGIN_SETTINGS if get_setting(name)), "*")
    entries = tuple(entry.strip() for entry in raw.split(",") if entry.strip())
    return CorsPolicy(
        origins=("*",) if "*" in entries else entries,
        allow_credentials=_first_flag(CREDENTIAL_SETTINGS, False),
        allow_localhost=_first_flag(LOCALHOST_SETTINGS, True),
    )


def _is_local_origin(origin: Optional[str]) -> bool:
    if not origin:
        return False
    return (urlsplit(origin).hostname or "").lower() in LOCAL_HOSTS


def _split_origin(value: str) -> Tuple[Optional[str], str, Optional[int]]:
    cleaned = value.strip().rstrip("/").lower()
    if "://" not in cleaned:
        return None, cleaned, None
    parts = urlsplit(cleaned)
    try:
        port = parts.port
    except ValueError:
        port = None
    return parts.scheme, parts.hostname or "", port


def _origin_matches(origin: Optional[str], allowed: str) -> bool:
    """
    Compare a request Origin against one configured entry.
    Entries may omit the scheme (host only) and may use a leading "*." wildcard.
    """
    if not origin or not allowed:
        return False
    scheme, host, port = _split_origin(origin)
    allowed_scheme, allowed_host, allowed_port = _split_origin(allowed)
    if not host or not allowed_host:
        return False
    if allowed_scheme and (allowed_scheme, allowed_port) != (scheme, port):
        return False
    if allowed_host.startswith("*."):
        suffix = allowed_host[1:]
        return host.endswith(suffix) and host != suffix[1:]
    return host == allowed_host


def _methods(allowed_methods: Iterable[str]) -> List[str]:
    methods: List[str] = []
    for method in allowed_methods:
        normalized = method.strip().upper()
        if normalized and normalized not in methods:
            methods.append(normalized)
    if "OPTIONS" not in methods:
        methods.append("OPTIONS")
    return methods


def _allow_headers(req: func.HttpRequest) -> str:
    """Known application headers plus whatever the browser asked for in the preflight."""
    merged = {name.lower(): name for name in APP_HEADERS}
    for name in req.headers.get("Access-Control-Request-Headers", "").split(","):
        cleaned = name.strip()
        if cleaned:
            merged.setdefault(cleaned.lower(), cleaned)
    return ", ".join(merged.values())


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    """Return CORS headers for the request origin if allowed."""
    policy = load_cors_policy()
    origin = req.headers.get("origin") or req.headers.get("Origin")
    headers: Dict[str, str] = {"Vary": "Origin"}

    allowed = (
        policy.open
        or any(_origin_matches(origin, entry) for entry in policy.origins)
        or (policy.allow_localhost and _is_local_origin(origin))
    )
    if not allowed:
        return headers

    if policy.allow_credentials and origin:
        # Browsers reject "*" on credentialed requests.
        allow_origin = origin
    elif policy.open:
        allow_origin = "*"
    else:
        allow_origin = origin or "*"
    headers["Access-Control-Allow-Origin"] = allow_origin
    headers["Access-Control-Allow-Methods"] = ", ".join(_methods(allowed_methods))
    headers["Access-Control-Allow-Headers"] = _allow_headers(req)
    if policy.allow_credentials:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
