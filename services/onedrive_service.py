"""
OneDrive / SharePoint integration for a tenant.

Covers the OAuth authorization-code flow with PKCE, token persistence
(encrypted at rest), the refresh-before-expiry and refresh-once-on-401
Graph helper, first-connect folder provisioning and document library
selection.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests

from shared.config import get_onedrive_settings
from shared.db import TenantOneDriveSettings, utcnow
from shared.errors import ServiceError
from utils.token_crypto import decrypt_optional, encrypt_optional

logger = logging.getLogger(__name__)

AUTHORIZE_SCOPE = "Files.ReadWrite Files.ReadWrite.All offline_access"
TOKEN_SCOPE = "https://graph.microsoft.com/.default offline_access"
FOLDER_STRUCTURE = {"customers": "Customers", "sites": "Sites", "deals": "Deals"}


class OneDriveAuthError(ServiceError):
    """Token exchange or refresh failed; the tenant must reconnect."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message, status_code)


# ---------------------------------------------------------------------------
# PKCE and state
# ---------------------------------------------------------------------------

def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = _b64url(secrets.token_bytes(64))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def encode_state(tenant_id: str, timestamp_ms: Optional[int] = None) -> str:
    payload = {
        "tenant_id": tenant_id,
        "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        "nonce": str(uuid.uuid4()),
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_state(state: str, max_age_seconds: Optional[int] = None) -> Dict[str, Any]:
    try:
        decoded = json.loads(base64.b64decode(state.encode("ascii"), validate=True).decode("utf-8"))
    except (ValueError, UnicodeError) as exc:
        raise ServiceError("Invalid state parameter. Please try connecting again.") from exc
    if not isinstance(decoded, dict):
        raise ServiceError("Invalid state parameter. Please try connecting again.")
    tenant_id = decoded.get("tenant_id")
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ServiceError("Invalid tenant ID in state parameter. Please try connecting again.")
    if max_age_seconds:
        try:
            issued_ms = int(decoded.get("timestamp") or 0)
        except (TypeError, ValueError):
            issued_ms = 0
        if time.time() * 1000 - issued_ms > max_age_seconds * 1000:
            raise ServiceError("Authorization request expired. Please try connecting again.")
    return decoded


# ---------------------------------------------------------------------------
# Settings row
# ---------------------------------------------------------------------------

def get_settings(db, tenant_id: str) -> Optional[TenantOneDriveSettings]:
    return db.query(TenantOneDriveSettings).filter_by(tenant_id=tenant_id).one_or_none()


def _require_settings(db, tenant_id: str) -> TenantOneDriveSettings:
    settings = get_settings(db, tenant_id)
    if not settings:
        raise ServiceError("Tenant OneDrive settings not found", 404)
    return settings


def _authority(settings: TenantOneDriveSettings) -> str:
    value = (settings.azure_tenant_id or "").strip()
    return value or "common"


def _token_url(settings: TenantOneDriveSettings) -> str:
    return f"{get_onedrive_settings()['login_base']}/{_authority(settings)}/oauth2/v2.0/token"


def _store_tokens(settings: TenantOneDriveSettings, token_data: dict, *, fallback_refresh: Optional[str]) -> None:
    refresh_token = token_data.get("refresh_token") or fallback_refresh
    try:
        expires_in = int(token_data.get("expires_in") or 3600)
    except (TypeError, ValueError):
        expires_in = 3600
    settings.access_token_enc = encrypt_optional(token_data.get("access_token"))
    settings.refresh_token_enc = encrypt_optional(refresh_token)
    settings.token_expires_at = utcnow() + timedelta(seconds=expires_in)


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------

def initialize_auth(
    db,
    *,
    tenant_id: str,
    client_id: str,
    client_secret: str,
    azure_tenant_id: Optional[str] = None,
) -> str:
    """Persist the PKCE verifier and client credentials, return the authorize URL."""
    if not tenant_id or not client_id or not client_secret:
        raise ServiceError("Missing required parameters", 400)

    verifier, challenge = generate_pkce_pair()
    settings = get_settings(db, tenant_id)
    if not settings:
        settings = TenantOneDriveSettings(tenant_id=tenant_id)
        db.add(settings)
    settings.client_id = client_id
    settings.client_secret_enc = encrypt_optional(client_secret)
    settings.code_verifier = verifier
    settings.enabled = True
    if azure_tenant_id is not None:
        settings.azure_tenant_id = azure_tenant_id.strip() or None
    db.commit()

    config = get_onedrive_settings()
    query = urlencode(
        {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": config["redirect_uri"],
            "scope": AUTHORIZE_SCOPE,
            "state": encode_state(tenant_id),
            "response_mode": "query",
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
    )
    return f"{config['login_base']}/{_authority(settings)}/oauth2/v2.0/authorize?{query}"


def _describe_token_error(token_data: dict) -> str:
    error = token_data.get("error")
    description = str(token_data.get("error_description") or "")
    if error == "invalid_grant":
        if "AADSTS70008" in description:
            return "Authorization code expired or already used. Please try connecting again."
        if "AADSTS50011" in description:
            return "Redirect URI mismatch. Please contact support."
        return "Invalid authorization code. Please try connecting again."
    if error == "invalid_client":
        return "Invalid client credentials. Please check your app registration."
    if error == "invalid_request":
        return "Invalid request parameters. Please try connecting again."
    return "Authentication failed"


def exchange_code(settings: TenantOneDriveSettings, code: str) -> Tuple[Optional[dict], Optional[str]]:
    config = get_onedrive_settings()
    payload = {
        "client_id": settings.client_id or "",
        "client_secret": decrypt_optional(settings.client_secret_enc) or "",
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config["redirect_uri"],
        "code_verifier": settings.code_verifier or "",
        "scope": TOKEN_SCOPE,
    }
    try:
        resp = requests.post(_token_url(settings), data=payload, timeout=config["http_timeout"])
    except requests.RequestException as exc:
        logger.error("Network error during token exchange: %s", exc)
        return None, "Network error during authentication. Please check your connection and try again."
    try:
        token_data = resp.json()
    except ValueError:
        logger.error("Token endpoint returned non-JSON body (status %s)", resp.status_code)
        return None, "Invalid response from Microsoft. Please try connecting again."
    if resp.status_code >= 300:
        logger.error("Token exchange failed: %s %s", resp.status_code, token_data.get("error"))
        return None, _describe_token_error(token_data)
    if not token_data.get("access_token"):
        return None, "No access token received from Microsoft. Please try connecting again."
    return token_data, None


def provision_folders(access_token: str) -> Tuple[Optional[str], Optional[str]]:
    """Create the base folders under the drive root. Returns (root_folder_id, error)."""
    config = get_onedrive_settings()
    headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
    try:
        resp = requests.get(f"{config['graph_base']}/me/drive/root", headers=headers, timeout=config["http_timeout"])
    except requests.RequestException as exc:
        logger.error("Network error accessing OneDrive: %s", exc)
        return None, "Failed to connect to OneDrive. Please check your connection and try again."
    if resp.status_code >= 300:
        logger.error("Failed to get drive root: %s %s", resp.status_code, resp.text)
        return None, "Failed to access OneDrive. Please ensure you have proper permissions and try again."
    try:
        root_id = (resp.json() or {}).get("id")
    except ValueError:
        return None, "Invalid response from OneDrive. Please try connecting again."
    if not root_id:
        return None, "Failed to get OneDrive folder information. Please try connecting again."

    for folder_name in FOLDER_STRUCTURE.values():
        body = {"name": folder_name, "folder": {}, "@microsoft.graph.conflictBehavior": "rename"}
        try:
            folder_resp = requests.post(
                f"{config['graph_base']}/me/drive/root/children",
                headers=headers,
                json=body,
                timeout=config["http_timeout"],
            )
        except requests.RequestException as exc:
            logger.warning("Error creating folder %s: %s", folder_name, exc)
            continue
        if folder_resp.status_code < 300:
            continue
        code = _graph_error(folder_resp, field="code")
        if code != "nameAlreadyExists":
            logger.error("Failed to create folder %s: %s", folder_name, code)
    return root_id, None


def handle_callback(db, params: Dict[str, Optional[str]]) -> Tuple[bool, str]:
    """Process the identity provider redirect. Returns (success, message for the popup page)."""
    error = params.get("error")
    if error:
        logger.error("OAuth error: %s", error)
        return False, f"Authentication failed: {error}"
    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        return False, "Missing authorization code or state"

    try:
        decoded = decode_state(state, get_onedrive_settings()["state_max_age_seconds"])
    except ServiceError as exc:
        return False, exc.message
    tenant_id = decoded["tenant_id"]

    settings = get_settings(db, tenant_id)
    if not settings:
        return False, "Tenant settings not found"
    if not settings.code_verifier:
        return False, "PKCE validation failed: code_verifier not found. Please try connecting again."

    token_data, token_error = exchange_code(settings, code)
    if token_error:
        return False, token_error

    root_id, folder_error = provision_folders(token_data["access_token"])
    if folder_error:
        return False, folder_error

    now = utcnow()
    _store_tokens(settings, token_data, fallback_refresh=None)
    settings.root_folder_id = root_id
    settings.folder_structure = json.dumps(FOLDER_STRUCTURE)
    settings.code_verifier = None
    settings.connected_at = now
    settings.last_sync_at = now
    db.commit()
    logger.info("OneDrive connected for tenant %s", tenant_id)
    return True, "OneDrive connected successfully!"


# ---------------------------------------------------------------------------
# Token refresh and Graph calls
# ---------------------------------------------------------------------------

def refresh_access_token(db, settings: TenantOneDriveSettings) -> str:
    refresh_token = decrypt_optional(settings.refresh_token_enc)
    if not refresh_token:
        raise OneDriveAuthError("No refresh token available")
    config = get_onedrive_settings()
    payload = {
        "client_id": settings.client_id or "",
        "client_secret": decrypt_optional(settings.client_secret_enc) or "",
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "scope": TOKEN_SCOPE,
    }
    try:
        resp = requests.post(_token_url(settings), data=payload, timeout=config["http_timeout"])
        token_data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise OneDriveAuthError(f"Token refresh failed: {exc}") from exc
    if resp.status_code >= 300 or not token_data.get("access_token"):
        detail = token_data.get("error_description") or token_data.get("error") or "Unknown error"
        logger.error("Token refresh error for tenant %s: %s", settings.tenant_id, token_data.get("error"))
        raise OneDriveAuthError(f"Token refresh failed: {detail}")

    _store_tokens(settings, token_data, fallback_refresh=refresh_token)
    db.commit()
    return token_data["access_token"]


def _graph_error(resp: requests.Response, field: str = "message") -> str:
    try:
        body = resp.json() or {}
    except ValueError:
        return "Unknown error"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get(field) or "Unknown error")
    return "Unknown error"


def _expires_soon(settings: TenantOneDriveSettings) -> bool:
    if not settings.token_expires_at:
        return False
    skew = timedelta(seconds=get_onedrive_settings()["refresh_skew_seconds"])
    return settings.token_expires_at <= utcnow() + skew


def graph_request(db, tenant_id: str, method: str, path: str, **kwargs) -> requests.Response:
    """
    Authenticated Graph call for a tenant.
    Refreshes ahead of expiry; on a 401 refreshes once and retries once.
    """
    settings = _require_settings(db, tenant_id)
    config = get_onedrive_settings()
    url = path if path.startswith("http") else f"{config['graph_base']}{path}"

    access_token = decrypt_optional(settings.access_token_enc)
    if _expires_soon(settings) or not access_token:
        access_token = refresh_access_token(db, settings)

    extra_headers = dict(kwargs.pop("headers", None) or {})

    def _send(token: str) -> requests.Response:
        headers = dict(extra_headers)
        headers["Authorization"] = f"Bearer {token}"
        headers.setdefault("Content-Type", "application/json")
        return requests.request(method, url, headers=headers, timeout=config["http_timeout"], **kwargs)

    resp = _send(access_token)
    if resp.status_code == 401 and settings.refresh_token_enc:
        logger.info("Graph returned 401 for tenant %s; refreshing token and retrying", tenant_id)
        try:
            access_token = refresh_access_token(db, settings)
        except OneDriveAuthError as exc:
            logger.error("Token refresh failed during retry: %s", exc.message)
            raise OneDriveAuthError("Authentication failed and token refresh unsuccessful") from exc
        resp = _send(access_token)
    return resp


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

def check_connection(db, tenant_id: str) -> Dict[str, Any]:
    settings = get_settings(db, tenant_id)
    if not settings or not settings.access_token_enc:
        return {"success": False, "error": "No valid access token found"}
    try:
        resp = graph_request(db, tenant_id, "GET", "/me/drive")
    except ServiceError as exc:
        return {"success": False, "error": f"Connection test failed: {exc.message}"}
    except requests.RequestException as exc:
        return {"success": False, "error": f"Connection test failed: {exc}"}
    if resp.status_code >= 300:
        return {"success": False, "error": f"Failed to access OneDrive: {_graph_error(resp)}"}
    try:
        info = resp.json() or {}
    except ValueError:
        return {"success": False, "error": "Connection test failed: invalid response from OneDrive"}
    return {
        "success": True,
        "drive_name": info.get("name"),
        "owner": ((info.get("owner") or {}).get("user") or {}).get("displayName"),
    }


def list_libraries(db, tenant_id: str) -> List[Dict[str, Any]]:
    settings = get_settings(db, tenant_id)
    if not settings or not settings.access_token_enc:
        raise ServiceError("No valid access token found", 400)

    try:
        libraries = _collect_libraries(db, tenant_id)
    except ServiceError as exc:
        raise ServiceError(f"Failed to fetch libraries: {exc.message}", 500) from exc
    except (requests.RequestException, ValueError) as exc:
        raise ServiceError(f"Failed to fetch libraries: {exc}", 500) from exc
    logger.info("Found %s libraries for tenant %s", len(libraries), tenant_id)
    return libraries


def _collect_libraries(db, tenant_id: str) -> List[Dict[str, Any]]:
    sites_resp = graph_request(db, tenant_id, "GET", "/sites?search=*")
    if sites_resp.status_code >= 300:
        raise ServiceError(f"Failed to fetch sites: {_graph_error(sites_resp)}", 500)
    sites = (sites_resp.json() or {}).get("value") or []

    libraries: List[Dict[str, Any]] = []
    drive_resp = graph_request(db, tenant_id, "GET", "/me/drive")
    if drive_resp.status_code < 300:
        drive = drive_resp.json() or {}
        owner = ((drive.get("owner") or {}).get("user") or {}).get("displayName") or "Me"
        libraries.append(
            {
                "id": drive.get("id"),
                "name": f"Personal OneDrive ({owner})",
                "type": "personal",
                "webUrl": drive.get("webUrl"),
            }
        )
    else:
        logger.warning("Failed to fetch personal OneDrive: %s", _graph_error(drive_resp))

    for site in sites:
        site_id = site.get("id")
        try:
            drives_resp = graph_request(db, tenant_id, "GET", f"/sites/{site_id}/drives")
        except requests.RequestException as exc:
            logger.warning("Error fetching drives for site %s: %s", site_id, exc)
            continue
        if drives_resp.status_code >= 300:
            logger.warning("Failed to fetch drives for site %s: %s", site.get("displayName"), _graph_error(drives_resp))
            continue
        for drive in (drives_resp.json() or {}).get("value") or []:
            if drive.get("driveType") != "documentLibrary":
                continue
            libraries.append(
                {
                    "id": drive.get("id"),
                    "name": f"{site.get('displayName')} - {drive.get('name')}",
                    "type": "sharepoint",
                    "webUrl": drive.get("webUrl"),
                    "siteId": site_id,
                }
            )
    return libraries


def set_library(db, tenant_id: str, library_id: str, library_name: str) -> None:
    if not tenant_id or not library_id or not library_name:
        raise ServiceError("Missing required parameters", 400)
    settings = _require_settings(db, tenant_id)
    settings.selected_library_id = library_id
    settings.selected_library_name = library_name
    db.commit()
