import logging

import azure.functions as func

from function_app import app
from shared.config import get_flag
from shared.db import Deal, SessionLocal
from shared.errors import ServiceError
from services.auth_context import require_auth, require_membership
from services.deal_status_service import change_deal_status, list_status_history, resume_paused_deals
from utils.cors import build_cors_headers
from utils.http import error_response, json_response, parse_body, preflight, service_error_response

logger = logging.getLogger(__name__)


def _paused_deal_sweep_disabled() -> bool:
    return get_flag("DISABLE_PAUSED_DEAL_SWEEP")


def _deal_tenant_id(db, deal_id: str) -> str:
    deal = db.query(Deal).filter_by(id=deal_id).filter(Deal.deleted_at.is_(None)).one_or_none()
    if not deal:
        raise ServiceError("Deal not found", 404)
    return deal.tenant_id


@app.function_name(name="DealStatusChange")
@app.route(route="deals/{deal_id}/status", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def deal_status_change(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    deal_id = req.route_params.get("deal_id")
    body = parse_body(req)
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        tenant_id = _deal_tenant_id(db, deal_id)
        require_membership(db, actor.user_id, tenant_id)
        result = change_deal_status(
            db,
            tenant_id=tenant_id,
            deal_id=deal_id,
            new_status_id=body.get("new_status_id"),
            reason=body.get("reason"),
            resume_date=body.get("resume_date"),
            changed_by=actor.user_id,
        )
        return json_response(result, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Deal status change failed for %s: %s", deal_id, exc)
        return error_response(cors=cors, status_code=500, message="Failed to update deal status", details=str(exc))
    finally:
        db.close()


@app.function_name(name="DealStatusHistory")
@app.route(route="deals/{deal_id}/status-history", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def deal_status_history(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    deal_id = req.route_params.get("deal_id")
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        tenant_id = _deal_tenant_id(db, deal_id)
        require_membership(db, actor.user_id, tenant_id)
        return json_response({"items": list_status_history(db, tenant_id, deal_id)}, cors=cors)
    except ServiceError as exc:
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Deal status history failed for %s: %s", deal_id, exc)
        return error_response(cors=cors, status_code=500, message="Failed to load status history", details=str(exc))
    finally:
        db.close()


@app.function_name(name="CheckPausedDealsManual")
@app.route(route="deals/check-paused", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.FUNCTION)
def check_paused_deals_manual(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    db = SessionLocal()
    try:
        results = resume_paused_deals(db)
        return json_response(
            {
                "success": True,
                "message": f"Processed {results['processed']} deals, resumed {results['resumed']}",
                "results": results,
            },
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Error in paused deal check: %s", exc)
        return json_response({"success": False, "error": str(exc)}, status_code=500, cors=cors)
    finally:
        db.close()


@app.function_name(name="CheckPausedDeals")
@app.timer_trigger(schedule="0 0 1 * * *", arg_name="timer", run_on_startup=False, use_monitor=True)
def check_paused_deals(timer: func.TimerRequest) -> None:
    if _paused_deal_sweep_disabled():
        logger.info("CheckPausedDeals disabled by DISABLE_PAUSED_DEAL_SWEEP")
        return
    if timer.past_due:
        logger.warning("CheckPausedDeals timer is running late")
    db = SessionLocal()
    try:
        results = resume_paused_deals(db)
        logger.info(
            "Paused deal check completed: processed=%s resumed=%s errors=%s",
            results["processed"],
            results["resumed"],
            len(results["errors"]),
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Paused deal check failed: %s", exc)
    finally:
        db.close()
