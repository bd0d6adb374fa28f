from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Boolean, Date, DateTime, Float, Integer

from shared.db import (
    DEAL_PIPELINE_STATUSES,
    AuditLog,
    Company,
    Contact,
    Contract,
    Customer,
    Deal,
    Site,
    Template,
    Todo,
    utcnow,
)
from shared.errors import ServiceError

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    "companies": Company,
    "contacts": Contact,
    "sites": Site,
    "customers": Customer,
    "deals": Deal,
    "contracts": Contract,
    "todos": Todo,
    "templates": Template,
}

WRITABLE_FIELDS = {
    "companies": {"name", "email", "phone", "website", "industry", "address", "notes", "is_lead"},
    "contacts": {"first_name", "last_name", "email", "phone", "position", "company_id", "notes", "is_lead"},
    "sites": {"name", "address", "city", "postcode", "company_id", "notes", "is_lead"},
    "customers": {"name", "email", "phone", "address", "notes"},
    # deal_status_id and status_resume_date only change through the status workflow.
    "deals": {
        "name",
        "value",
        "status",
        "deal_stage_id",
        "company_id",
        "contact_id",
        "assigned_to",
        "expected_close_date",
        "notes",
    },
    "contracts": {"name", "deal_id", "company_id", "value", "status", "assigned_to", "start_date", "end_date", "notes"},
    "todos": {"title", "description", "due_date", "priority", "completed", "assigned_to", "deal_id"},
    "templates": {"name", "template_type", "subject", "content"},
}

REQUIRED_FIELDS = {
    "companies": ("name",),
    "contacts": ("first_name",),
    "sites": ("name",),
    "customers": ("name",),
    "deals": ("name",),
    "contracts": ("name",),
    "todos": ("title",),
    "templates": ("name",),
}


def _model_for(entity: str):
    model = ENTITY_MODELS.get(str(entity or "").strip().lower())
    if model is None:
        raise ServiceError(f"Unknown entity: {entity}", 404)
    return model


def to_dict(row) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.name)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        data[column.name] = value
    return data


def _coerce(column, value: Any) -> Any:
    if value is None or value == "":
        return None if not isinstance(column.type, Boolean) else False
    try:
        if isinstance(column.type, Boolean):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "y"}
            return bool(value)
        if isinstance(column.type, Float):
            return float(value)
        if isinstance(column.type, Integer):
            return int(value)
        if isinstance(column.type, DateTime):
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", ""))
        if isinstance(column.type, Date):
            return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError) as exc:
        raise ServiceError(f"Invalid value for {column.name}", 400) from exc
    return value


def _apply_fields(entity: str, row, payload: Dict[str, Any]) -> List[str]:
    allowed = WRITABLE_FIELDS[entity]
    columns = row.__table__.columns
    changed = []
    for key, value in payload.items():
        if key not in allowed:
            continue
        coerced = _coerce(columns[key], value)
        if key == "status" and entity == "deals" and coerced not in DEAL_PIPELINE_STATUSES:
            raise ServiceError(f"Invalid deal status: {value}", 400)
        if getattr(row, key) != coerced:
            setattr(row, key, coerced)
            changed.append(key)
    return changed


def write_audit_event(
    db,
    tenant_id: str,
    *,
    actor_id: Optional[str],
    entity_type: str,
    entity_id: str,
    action: str,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
) -> AuditLog:
    event = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before_json=json.dumps(before) if before else None,
        after_json=json.dumps(after) if after else None,
    )
    db.add(event)
    return event


def _get_row(db, entity: str, tenant_id: str, record_id: str, *, include_deleted: bool = False):
    model = _model_for(entity)
    query = db.query(model).filter(model.tenant_id == tenant_id, model.id == record_id)
    if not include_deleted:
        query = query.filter(model.deleted_at.is_(None))
    row = query.one_or_none()
    if not row:
        raise ServiceError("Record not found", 404)
    return row


def list_records(
    db,
    entity: str,
    tenant_id: str,
    *,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
    filters: Optional[Dict[str, Any]] = None,
) -> Tuple[List[Dict[str, Any]], bool]:
    """Return (page, has_more), newest first."""
    model = _model_for(entity)
    query = db.query(model).filter(model.tenant_id == tenant_id)
    if not include_deleted:
        query = query.filter(model.deleted_at.is_(None))
    for key, value in (filters or {}).items():
        if key in WRITABLE_FIELDS[entity] and value not in (None, ""):
            query = query.filter(getattr(model, key) == _coerce(model.__table__.columns[key], value))
    safe_limit = max(1, min(100, int(limit or 50)))
    rows = (
        query.order_by(model.created_at.desc(), model.id.asc())
        .offset(max(0, int(offset or 0)))
        .limit(safe_limit + 1)
        .all()
    )
    return [to_dict(row) for row in rows[:safe_limit]], len(rows) > safe_limit


def get_record(db, entity: str, tenant_id: str, record_id: str) -> Dict[str, Any]:
    return to_dict(_get_row(db, entity, tenant_id, record_id))


def create_record(db, entity: str, tenant_id: str, payload: Dict[str, Any], *, actor_id: Optional[str]) -> Dict[str, Any]:
    model = _model_for(entity)
    entity = entity.strip().lower()
    missing = [field for field in REQUIRED_FIELDS[entity] if not payload.get(field)]
    if missing:
        raise ServiceError(f"Missing required fields: {', '.join(missing)}", 400)
    row = model(tenant_id=tenant_id, created_by=actor_id)
    _apply_fields(entity, row, payload)
    db.add(row)
    db.flush()
    after = to_dict(row)
    write_audit_event(db, tenant_id, actor_id=actor_id, entity_type=entity, entity_id=row.id, action="create", after=after)
    db.commit()
    return after


def update_record(
    db,
    entity: str,
    tenant_id: str,
    record_id: str,
    payload: Dict[str, Any],
    *,
    actor_id: Optional[str],
) -> Dict[str, Any]:
    row = _get_row(db, entity, tenant_id, record_id)
    entity = entity.strip().lower()
    before = to_dict(row)
    changed = _apply_fields(entity, row, payload)
    if not changed:
        return before
    row.updated_at = utcnow()
    db.flush()
    after = to_dict(row)
    write_audit_event(
        db,
        tenant_id,
        actor_id=actor_id,
        entity_type=entity,
        entity_id=row.id,
        action="update",
        before={key: before[key] for key in changed},
        after={key: after[key] for key in changed},
    )
    db.commit()
    return after


def soft_delete_record(db, entity: str, tenant_id: str, record_id: str, *, actor_id: Optional[str]) -> Dict[str, Any]:
    row = _get_row(db, entity, tenant_id, record_id)
    before = to_dict(row)
    row.deleted_at = utcnow()
    db.flush()
    after = to_dict(row)
    write_audit_event(
        db,
        tenant_id,
        actor_id=actor_id,
        entity_type=entity.strip().lower(),
        entity_id=row.id,
        action="delete",
        before=before,
        after=after,
    )
    db.commit()
    return after


def restore_record(db, entity: str, tenant_id: str, record_id: str, *, actor_id: Optional[str]) -> Dict[str, Any]:
    row = _get_row(db, entity, tenant_id, record_id, include_deleted=True)
    if row.deleted_at is None:
        raise ServiceError("Record is not deleted", 400)
    before = to_dict(row)
    row.deleted_at = None
    db.flush()
    after = to_dict(row)
    write_audit_event(
        db,
        tenant_id,
        actor_id=actor_id,
        entity_type=entity.strip().lower(),
        entity_id=row.id,
        action="restore",
        before=before,
        after=after,
    )
    db.commit()
    return after


def list_audit_events(db, tenant_id: str, entity: str, record_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    _model_for(entity)
    rows = (
        db.query(AuditLog)
        .filter_by(tenant_id=tenant_id, entity_type=entity.strip().lower(), entity_id=record_id)
        .order_by(AuditLog.created_at.desc())
        .limit(max(1, min(100, limit)))
        .all()
    )
    events = []
    for row in rows:
        item = to_dict(row)
        item["before"] = json.loads(row.before_json) if row.before_json else None
        item["after"] = json.loads(row.after_json) if row.after_json else None
        item.pop("before_json", None)
        item.pop("after_json", None)
        events.append(item)
    return events
