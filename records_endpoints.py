import logging
from typing import Optional

import azure.functions as func

from function_app import app
from shared.db import SessionLocal
from shared.errors import ServiceError
from services.auth_context import is_admin_role, require_auth, require_membership
from services.records_service import (
    create_record,
    get_record,
    list_audit_events,
    list_records,
    restore_record,
    soft_delete_record,
    update_record,
)
from utils.cors import build_cors_headers
from utils.http import error_response, get_limit, json_response, parse_body, preflight, service_error_response

logger = logging.getLogger(__name__)

LIST_FILTER_PARAMS = ("status", "is_lead", "company_id", "assigned_to", "deal_id", "completed")


def _tenant_id(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    headers = req.headers or {}
    tenant_id = (
        headers.get("x-tenant-id")
        or headers.get("X-Tenant-Id")
        or req.params.get("tenant_id")
        or (body or {}).get("tenant_id")
    )
    if not tenant_id:
        raise ServiceError("tenant_id is required", 400)
    return str(tenant_id)


@app.function_name(name="RecordsCollection")
@app.route(route="records/{entity}", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def records_collection(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    entity = req.route_params.get("entity")
    body = parse_body(req) if req.method == "POST" else {}
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        tenant_id = _tenant_id(req, body)
        require_membership(db, actor.user_id, tenant_id)
        if req.method == "GET":
            try:
                offset = int(req.params.get("offset") or 0)
            except ValueError:
                offset = 0
            items, has_more = list_records(
                db,
                entity,
                tenant_id,
                include_deleted=str(req.params.get("include_deleted") or "").lower() == "true",
                limit=get_limit(req),
                offset=offset,
                filters={key: req.params.get(key) for key in LIST_FILTER_PARAMS if req.params.get(key)},
            )
            return json_response({"items": items, "has_more": has_more}, cors=cors)
        created = create_record(db, entity, tenant_id, body, actor_id=actor.user_id)
        return json_response(created, status_code=201, cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Records %s %s failed: %s", req.method, entity, exc)
        return error_response(cors=cors, status_code=500, message="Request failed", details=str(exc))
    finally:
        db.close()


@app.function_name(name="RecordsItem")
@app.route(
    route="records/{entity}/{record_id}",
    methods=["GET", "PATCH", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def records_item(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    entity = req.route_params.get("entity")
    record_id = req.route_params.get("record_id")
    body = parse_body(req) if req.method == "PATCH" else {}
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        tenant_id = _tenant_id(req, body)
        require_membership(db, actor.user_id, tenant_id)
        if req.method == "GET":
            return json_response(get_record(db, entity, tenant_id, record_id), cors=cors)
        if req.method == "PATCH":
            return json_response(update_record(db, entity, tenant_id, record_id, body, actor_id=actor.user_id), cors=cors)
        return json_response(soft_delete_record(db, entity, tenant_id, record_id, actor_id=actor.user_id), cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Records %s %s/%s failed: %s", req.method, entity, record_id, exc)
        return error_response(cors=cors, status_code=500, message="Request failed", details=str(exc))
    finally:
        db.close()


@app.function_name(name="RecordsRestore")
@app.route(route="records/{entity}/{record_id}/restore", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def records_restore(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    entity = req.route_params.get("entity")
    record_id = req.route_params.get("record_id")
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        tenant_id = _tenant_id(req, parse_body(req))
        membership = require_membership(db, actor.user_id, tenant_id)
        if not is_admin_role(membership.role):
            raise ServiceError("Only administrators can restore records", 403)
        return json_response(restore_record(db, entity, tenant_id, record_id, actor_id=actor.user_id), cors=cors)
    except ServiceError as exc:
        db.rollback()
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Restore %s/%s failed: %s", entity, record_id, exc)
        return error_response(cors=cors, status_code=500, message="Restore failed", details=str(exc))
    finally:
        db.close()


@app.function_name(name="RecordsAudit")
@app.route(route="records/{entity}/{record_id}/audit", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def records_audit(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)

    entity = req.route_params.get("entity")
    record_id = req.route_params.get("record_id")
    db = SessionLocal()
    try:
        actor = require_auth(db, req)
        tenant_id = _tenant_id(req)
        require_membership(db, actor.user_id, tenant_id)
        items = list_audit_events(db, tenant_id, entity, record_id, limit=get_limit(req))
        return json_response({"items": items}, cors=cors)
    except ServiceError as exc:
        return service_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Audit trail %s/%s failed: %s", entity, record_id, exc)
        return error_response(cors=cors, status_code=500, message="Request failed", details=str(exc))
    finally:
        db.close()
