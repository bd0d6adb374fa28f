import logging

import azure.functions as func

from function_app import app
from shared.db import SessionLocal
from shared.errors import ServiceError
from services.user_service import login, signup
from utils.cors import build_cors_headers
from utils.http import error_response, json_response, parse_body, preflight, service_error_response

logger = logging.getLogger(__name__)


@app.function_name(name="AuthSignup")
@app.route(route="auth/signup", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_signup(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        user = signup(
            db,
            email=body.get("email"),
            password=body.get("password"),
            first_name=body.get("first_name"),
            last_name=body.get("last_name"),
        )
        return json_response({"user_id": user.id, "email": user.email}, status_code=201, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Signup failed: %s", exc)
        return error_response(cors=cors, status_code=500, message="Signup failed", details=str(exc))
    finally:
        db.close()


@app.function_name(name="AuthLogin")
@app.route(route="auth/login", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_login(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    body = parse_body(req)
    db = SessionLocal()
    try:
        payload = login(db, email=body.get("email"), password=body.get("password"))
        return json_response(payload, status_code=200, cors=cors)
    except ServiceError as exc:
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Login failed: %s", exc)
        return error_response(cors=cors, status_code=500, message="Login failed", details=str(exc))
    finally:
        db.close()
