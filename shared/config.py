import os
from typing import Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def get_int_setting(name: str, default: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/app.db"


def get_public_api_base() -> str:
    """
    Base URL the identity provider redirects back to (no trailing slash).
    Defaults to the Azure Functions hostname if not provided.
    """
    return (os.getenv("API_PUBLIC_BASE_URL") or "https://crm-func.azurewebsites.net").rstrip("/")


def get_app_public_url() -> str:
    """Frontend origin used in email links when the request carries no Origin header."""
    return (os.getenv("APP_PUBLIC_URL") or "http://localhost:5173").rstrip("/")


def get_onedrive_settings() -> dict:
    """
    Microsoft identity platform and Graph endpoints plus OAuth housekeeping values.
    """
    return {
        "login_base": (os.getenv("MS_LOGIN_BASE_URL") or "https://login.microsoftonline.com").rstrip("/"),
        "graph_base": (os.getenv("MS_GRAPH_BASE_URL") or "https://graph.microsoft.com/v1.0").rstrip("/"),
        "redirect_uri": os.getenv("ONEDRIVE_REDIRECT_URI") or f"{get_public_api_base()}/api/onedrive/auth",
        "state_max_age_seconds": get_int_setting("ONEDRIVE_STATE_MAX_AGE_SECONDS", 30 * 60),
        "refresh_skew_seconds": get_int_setting("ONEDRIVE_REFRESH_SKEW_SECONDS", 5 * 60),
        "http_timeout": get_int_setting("ONEDRIVE_HTTP_TIMEOUT_SECONDS", 15),
    }


def get_email_settings() -> dict:
    """
    SendGrid settings for transactional email (invitations, recovery email).
    Values are optional; without an API key the payload is only logged.
    """
    return {
        "api_key": os.getenv("SENDGRID_API_KEY"),
        "from_email": os.getenv("FROM_EMAIL") or "no-reply@yourdomain",
        "from_name": os.getenv("FROM_NAME") or "CRM",
    }
