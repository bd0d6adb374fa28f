from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from sqlalchemy import func as sa_func

from shared.db import Branch, Company, Contract, ContractPaymentTerm, Deal, Department, Target, User
from shared.errors import ServiceError
from services.commission_service import CLOSED_DEAL_STATUSES
from services.period import parse_bound, round_money

logger = logging.getLogger(__name__)

ACHIEVED_THRESHOLD = 100
ON_TRACK_THRESHOLD = 75


def progress_status(percentage: float) -> str:
    if percentage >= ACHIEVED_THRESHOLD:
        return "achieved"
    if percentage >= ON_TRACK_THRESHOLD:
        return "on-track"
    return "behind"


def _actual_value(db, target: Target) -> float:
    start = datetime.combine(target.period_start, time.min)
    end = datetime.combine(target.period_end, time.max)
    user_id = target.entity_id if target.target_level == "user" and target.entity_id else None

    if target.target_type == "leads_count":
        query = (
            db.query(sa_func.count(Company.id))
            .filter(Company.tenant_id == target.tenant_id)
            .filter(Company.is_lead.is_(True))
            .filter(Company.deleted_at.is_(None))
            .filter(Company.created_at >= start, Company.created_at <= end)
        )
        if user_id:
            query = query.filter(Company.created_by == user_id)
        return float(query.scalar() or 0)

    if target.target_type in ("deals_count", "deals_value"):
        column = sa_func.count(Deal.id) if target.target_type == "deals_count" else sa_func.sum(Deal.value)
        query = (
            db.query(column)
            .filter(Deal.tenant_id == target.tenant_id)
            .filter(Deal.status.in_(CLOSED_DEAL_STATUSES))
            .filter(Deal.deleted_at.is_(None))
            .filter(Deal.updated_at >= start, Deal.updated_at <= end)
        )
        if user_id:
            query = query.filter(Deal.assigned_to == user_id)
        return float(query.scalar() or 0)

    if target.target_type == "payments_value":
        query = (
            db.query(sa_func.sum(ContractPaymentTerm.calculated_amount))
            .join(Contract, Contract.id == ContractPaymentTerm.contract_id)
            .filter(Contract.tenant_id == target.tenant_id)
            .filter(ContractPaymentTerm.due_date >= target.period_start)
            .filter(ContractPaymentTerm.due_date <= target.period_end)
        )
        if user_id:
            query = query.filter(Contract.assigned_to == user_id)
        return float(query.scalar() or 0)

    logger.warning("Unknown target type %r on target %s", target.target_type, target.id)
    return 0.0


def _entity_name(db, target: Target) -> str:
    if not target.entity_id:
        return "Company-wide"
    if target.target_level == "branch":
        branch = db.query(Branch).filter_by(id=target.entity_id).one_or_none()
        return branch.name if branch else "Unknown Branch"
    if target.target_level == "department":
        department = db.query(Department).filter_by(id=target.entity_id).one_or_none()
        return department.name if department else "Unknown Department"
    if target.target_level == "user":
        user = db.query(User).filter_by(id=target.entity_id).one_or_none()
        return (user.full_name or user.email) if user else "Unknown User"
    return "Company-wide"


def _to_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value else None


def calculate_target_progress(
    db,
    *,
    tenant_id: str,
    level: Optional[str] = None,
    entity_id: Optional[str] = None,
    period_start: Any = None,
    period_end: Any = None,
) -> List[Dict[str, Any]]:
    if not tenant_id:
        raise ServiceError("tenantId is required", 400)
    start = _to_date(parse_bound(period_start))
    end = _to_date(parse_bound(period_end, end=True))

    query = db.query(Target).filter_by(tenant_id=tenant_id).filter(Target.active.is_(True))
    if level:
        query = query.filter(Target.target_level == level)
    if entity_id:
        query = query.filter(Target.entity_id == entity_id)
    if start:
        query = query.filter(Target.period_start >= start)
    if end:
        query = query.filter(Target.period_end <= end)

    progress = []
    for target in query.order_by(Target.period_start.asc()).all():
        actual = _actual_value(db, target)
        target_value = float(target.target_value or 0)
        percentage = (actual / target_value) * 100 if target_value > 0 else 0.0
        progress.append(
            {
                "id": target.id,
                "name": target.name,
                "target_level": target.target_level,
                "entity_id": target.entity_id,
                "target_type": target.target_type,
                "target_value": target_value,
                "period_type": target.period_type,
                "period_start": target.period_start.isoformat(),
                "period_end": target.period_end.isoformat(),
                "actualValue": round_money(actual),
                "progressPercentage": round_money(percentage),
                "entityName": _entity_name(db, target),
                "status": progress_status(percentage),
            }
        )
    return progress
