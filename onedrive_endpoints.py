import logging
from html import escape

import azure.functions as func

from function_app import app
from shared.db import SessionLocal
from shared.errors import ServiceError
from services.auth_context import require_auth, require_membership
from services.onedrive_service import (
    check_connection,
    handle_callback,
    initialize_auth,
    list_libraries,
    set_library,
)
from utils.cors import build_cors_headers
from utils.http import error_response, json_response, parse_body, preflight, service_error_response

logger = logging.getLogger(__name__)


def _popup_page(message: str, status_code: int, cors: dict) -> func.HttpResponse:
    html = f"<html><body><script>window.close();</script><p>{escape(message)}</p></body></html>"
    headers = dict(cors)
    headers["Content-Type"] = "text/html"
    return func.HttpResponse(html, status_code=status_code, mimetype="text/html", headers=headers)


def _handle_callback(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    params = {key: req.params.get(key) for key in ("code", "state", "error")}
    logger.info(
        "OneDrive OAuth callback - code: %s, state: %s, error: %s",
        "present" if params["code"] else "missing",
        "present" if params["state"] else "missing",
        params["error"] or "none",
    )
    db = SessionLocal()
    try:
        success, message = handle_callback(db, params)
        return _popup_page(message, 200 if success else 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("OneDrive callback processing failed: %s", exc)
        return _popup_page("Authentication processing failed. Please try connecting again.", 500, cors)
    finally:
        db.close()


@app.function_name(name="OneDriveAuth")
@app.route(route="onedrive/auth", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def onedrive_auth(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)
    if req.method == "GET":
        return _handle_callback(req, cors)

    body = parse_body(req)
    action = body.get("action")
    tenant_id = body.get("tenant_id")
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        if tenant_id:
            require_membership(db, actor.user_id, tenant_id)

        if action == "initialize":
            auth_url = initialize_auth(
                db,
                tenant_id=tenant_id,
                client_id=body.get("client_id"),
                client_secret=body.get("client_secret"),
                azure_tenant_id=body.get("azure_tenant_id"),
            )
            return json_response({"auth_url": auth_url}, cors=cors)

        if action in ("test", "get_libraries", "set_library") and not tenant_id:
            raise ServiceError("Missing tenant_id", 400)
        if action == "test":
            return json_response(check_connection(db, tenant_id), cors=cors)
        if action == "get_libraries":
            return json_response({"libraries": list_libraries(db, tenant_id)}, cors=cors)
        if action == "set_library":
            set_library(db, tenant_id, body.get("library_id"), body.get("library_name"))
            logger.info("Library %s selected for tenant %s", body.get("library_id"), tenant_id)
            return json_response({"success": True}, cors=cors)

        return error_response(cors=cors, status_code=400, message=f"Unknown action: {action}")
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("OneDrive auth action %s failed: %s", action, exc)
        return error_response(cors=cors, status_code=500, message=str(exc) or "Internal server error")
    finally:
        db.close()
