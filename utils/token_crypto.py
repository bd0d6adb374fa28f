import base64
import hashlib
import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.config import get_required_setting

TOKEN_PREFIX = "v1:"
KEY_SETTING = "ONEDRIVE_TOKEN_ENC_KEY"
NONCE_SIZE = 12
AES_KEY_SIZES = (16, 24, 32)


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode((value + "=" * (-len(value) % 4)).encode("utf-8"))


def _cipher() -> AESGCM:
    """
    AES-GCM keyed from ONEDRIVE_TOKEN_ENC_KEY.
    A base64url value of a valid AES key length is used as is; any other
    passphrase is stretched with SHA-256.
    """
    raw = get_required_setting(KEY_SETTING)
    try:
        key = _b64decode(raw)
    except ValueError:
        key = b""
    if len(key) not in AES_KEY_SIZES:
        key = hashlib.sha256(raw.encode("utf-8")).digest()
    return AESGCM(key)


def encrypt_token(token: str) -> str:
    if token is None:
        raise ValueError("token is required")
    nonce = os.urandom(NONCE_SIZE)
    sealed = _cipher().encrypt(nonce, token.encode("utf-8"), None)
    return TOKEN_PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode("utf-8").rstrip("=")


def decrypt_token(token: str) -> str:
    if token is None:
        raise ValueError("token is required")
    body = str(token)
    if body.startswith(TOKEN_PREFIX):
        body = body[len(TOKEN_PREFIX):]
    try:
        blob = _b64decode(body)
    except ValueError as exc:
        raise ValueError("Invalid token encoding") from exc
    if len(blob) <= NONCE_SIZE:
        raise ValueError("Invalid token payload")
    return _cipher().decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None).decode("utf-8")


def encrypt_optional(token: Optional[str]) -> Optional[str]:
    return encrypt_token(token) if token else None


def decrypt_optional(token: Optional[str]) -> Optional[str]:
    return decrypt_token(token) if token else None
