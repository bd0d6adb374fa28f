import logging

import azure.functions as func

from function_app import app
from shared.db import SessionLocal
from shared.errors import ServiceError
from services.auth_context import require_auth
from services.user_service import admin_reset_password, send_recovery_email_verification, verify_recovery_email
from utils.cors import build_cors_headers
from utils.http import error_response, json_response, parse_body, preflight, request_origin, service_error_response

logger = logging.getLogger(__name__)


@app.function_name(name="AdminResetUserPassword")
@app.route(route="tenant-users/reset-password", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def reset_user_password(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        result = admin_reset_password(
            db,
            actor=actor,
            user_id=body.get("user_id"),
            tenant_id=body.get("tenant_id"),
            new_password=body.get("new_password"),
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Admin password reset failed: %s", exc)
        return error_response(cors=cors, status_code=500, message=str(exc))
    finally:
        db.close()


@app.function_name(name="SendRecoveryEmailVerification")
@app.route(route="recovery-email/send", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def send_recovery_email(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        result = send_recovery_email_verification(
            db,
            actor=actor,
            recovery_email=body.get("recoveryEmail") or body.get("recovery_email"),
            origin=request_origin(req),
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Recovery email verification send failed: %s", exc)
        return error_response(cors=cors, status_code=400, message=str(exc))
    finally:
        db.close()


@app.function_name(name="VerifyRecoveryEmail")
@app.route(route="recovery-email/verify", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def verify_recovery(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        return json_response(verify_recovery_email(db, token=body.get("token")), cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Recovery email verification failed: %s", exc)
        return error_response(cors=cors, status_code=400, message=str(exc))
    finally:
        db.close()
