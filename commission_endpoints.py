import logging

import azure.functions as func

from function_app import app
from shared.db import SessionLocal
from shared.errors import ServiceError
from services.auth_context import require_auth, require_membership
from services.commission_service import calculate_commission
from services.target_service import calculate_target_progress
from utils.cors import build_cors_headers
from utils.http import error_response, json_response, parse_body, preflight, service_error_response

logger = logging.getLogger(__name__)


def _report_args(body: dict) -> dict:
    return {
        "tenant_id": body.get("tenantId"),
        "level": body.get("level"),
        "entity_id": body.get("entityId"),
        "period_start": body.get("periodStart"),
        "period_end": body.get("periodEnd"),
    }


@app.function_name(name="CalculateCommissionData")
@app.route(route="commission/calculate", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def commission_calculate(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    args = _report_args(parse_body(req))
    db = SessionLocal()
    try:
        if not args["tenant_id"]:
            raise ServiceError("tenantId is required", 400)
        actor = require_auth(db, req)
        require_membership(db, actor.user_id, args["tenant_id"])
        logger.info("Calculating commission data for tenant %s (level=%s)", args["tenant_id"], args["level"])
        return json_response({"data": calculate_commission(db, **args)}, cors=cors)
    except ServiceError as exc:
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Error calculating commission data: %s", exc)
        return error_response(cors=cors, status_code=500, message=str(exc))
    finally:
        db.close()


@app.function_name(name="CalculateTargetProgress")
@app.route(route="targets/progress", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def target_progress(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    args = _report_args(parse_body(req))
    db = SessionLocal()
    try:
        if not args["tenant_id"]:
            raise ServiceError("tenantId is required", 400)
        actor = require_auth(db, req)
        require_membership(db, actor.user_id, args["tenant_id"])
        return json_response({"data": calculate_target_progress(db, **args)}, cors=cors)
    except ServiceError as exc:
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Error calculating target progress: %s", exc)
        return error_response(cors=cors, status_code=500, message=str(exc))
    finally:
        db.close()
