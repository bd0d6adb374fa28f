import logging

import azure.functions as func

from function_app import app
from shared.db import SessionLocal
from shared.errors import ServiceError
from services.auth_context import get_optional_auth, require_auth
from services.invitation_service import (
    accept_invitation,
    create_account_from_invitation,
    create_tenant_user,
    send_tenant_invitation,
)
from utils.cors import build_cors_headers
from utils.http import (
    error_response,
    json_response,
    parse_body,
    preflight,
    request_origin,
    service_error_response,
)

logger = logging.getLogger(__name__)


@app.function_name(name="SendTenantInvitation")
@app.route(route="invitations/send", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def send_invitation(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        result = send_tenant_invitation(
            db,
            actor=actor,
            email=body.get("email"),
            role=body.get("role"),
            tenant_id=body.get("tenant_id"),
            custom_role_id=body.get("custom_role_id"),
            origin=request_origin(req),
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Send invitation failed: %s", exc)
        return error_response(cors=cors, status_code=500, message="Internal server error")
    finally:
        db.close()


@app.function_name(name="CreateTenantUser")
@app.route(route="tenant-users", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def create_user_for_tenant(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        result = create_tenant_user(
            db,
            actor=actor,
            email=body.get("email"),
            first_name=body.get("first_name"),
            last_name=body.get("last_name"),
            role=body.get("role"),
            tenant_id=body.get("tenant_id"),
            custom_role_id=body.get("custom_role_id"),
            origin=request_origin(req),
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Create tenant user failed: %s", exc)
        return error_response(cors=cors, status_code=500, message=str(exc))
    finally:
        db.close()


def _accept(req: func.HttpRequest, *, session_required: bool) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        session = require_auth(db, req) if session_required else get_optional_auth(db, req)
        result = accept_invitation(
            db,
            token=body.get("token") or body.get("invitation_token"),
            session=session,
            first_name=body.get("first_name"),
            last_name=body.get("last_name"),
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Accept invitation failed: %s", exc)
        return error_response(cors=cors, status_code=500, message="Internal server error")
    finally:
        db.close()


@app.function_name(name="AcceptTenantInvitation")
@app.route(route="invitations/accept", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def accept_tenant_invitation(req: func.HttpRequest) -> func.HttpResponse:
    return _accept(req, session_required=False)


@app.function_name(name="LinkInvitationToAccount")
@app.route(route="invitations/link", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def link_invitation_to_account(req: func.HttpRequest) -> func.HttpResponse:
    return _accept(req, session_required=True)


@app.function_name(name="CreateAccountFromInvitation")
@app.route(route="invitations/create-account", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def create_account(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        result = create_account_from_invitation(
            db,
            token=body.get("invitation_token"),
            first_name=body.get("first_name"),
            last_name=body.get("last_name"),
            password=body.get("password"),
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Create account from invitation failed: %s", exc)
        return error_response(cors=cors, status_code=500, message="Internal server error")
    finally:
        db.close()
