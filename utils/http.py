from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Dict, Optional

import azure.functions as func

from shared.config import get_app_public_url
from shared.errors import ServiceError


def _default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_response(data: Any, *, status_code: int = 200, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data, default=_default),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def error_response(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: Optional[str] = None,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload: Dict[str, Any] = {"error": message}
    if code:
        payload["code"] = code
    if details is not None:
        payload["details"] = details
    return json_response(payload, status_code=status_code, cors=cors)


def service_error_response(exc: ServiceError, cors: Dict[str, str]) -> func.HttpResponse:
    return json_response(exc.to_payload(), status_code=exc.status_code, cors=cors)


def preflight(cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse("", status_code=204, headers=cors)


def parse_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def request_origin(req: func.HttpRequest) -> str:
    """Origin used to build links in outgoing emails."""
    origin = req.headers.get("origin") or req.headers.get("Origin")
    if origin:
        return origin.rstrip("/")
    return get_app_public_url()


def get_limit(req: func.HttpRequest, default: int = 50, maximum: int = 100) -> int:
    raw = req.params.get("limit")
    try:
        value = int(raw) if raw else default
    except (TypeError, ValueError):
        value = default
    return max(1, min(maximum, value))
