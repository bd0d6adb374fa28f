from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import selectinload

from shared.db import CommissionConfiguration, Deal, DealStage, User, UserTenantMembership
from shared.errors import ServiceError
from services.period import parse_period, round_money

logger = logging.getLogger(__name__)

CLOSED_DEAL_STATUSES = ("won", "closed")
FIXED_METHODS = {"fixed", "fixed_amount"}


def _deals_query(db, tenant_id: str, user_id: str, start: Optional[datetime], end: Optional[datetime]):
    query = (
        db.query(Deal)
        .filter(Deal.tenant_id == tenant_id)
        .filter(Deal.assigned_to == user_id)
        .filter(Deal.deleted_at.is_(None))
    )
    if start:
        query = query.filter(Deal.updated_at >= start)
    if end:
        query = query.filter(Deal.updated_at <= end)
    return query


def _closed_deals(db, tenant_id, user_id, start, end) -> List[Deal]:
    return _deals_query(db, tenant_id, user_id, start, end).filter(Deal.status.in_(CLOSED_DEAL_STATUSES)).all()


def select_stage_rate(config: CommissionConfiguration, total_value: float) -> float:
    """
    Rate (percent) for a total. Without stages the base rate applies; with
    stages the first band by sort order containing the total wins, and no
    matching band earns nothing.
    """
    stages = sorted(config.stages or [], key=lambda stage: stage.sort_order or 0)
    if not stages:
        return float(config.percentage_rate or 0)
    for stage in stages:
        lower = float(stage.min_threshold or 0)
        upper = stage.max_threshold
        if total_value >= lower and (not upper or total_value <= float(upper)):
            return float(stage.commission_rate or 0)
    return 0.0


def _earned_for_config(db, config: CommissionConfiguration, tenant_id: str, user_id: str, start, end):
    method = (config.calculation_method or "").strip().lower()
    if method in FIXED_METHODS:
        achievements = len(_closed_deals(db, tenant_id, user_id, start, end))
        return achievements * float(config.fixed_amount or 0), float(achievements)

    if method == "percentage":
        total_value = sum(float(deal.value or 0) for deal in _closed_deals(db, tenant_id, user_id, start, end))
        return total_value * select_stage_rate(config, total_value) / 100, total_value

    if method == "stage_based":
        rows = (
            _deals_query(db, tenant_id, user_id, start, end)
            .join(DealStage, DealStage.id == Deal.deal_stage_id)
            .with_entities(Deal.value, DealStage.win_percentage)
            .all()
        )
        base_rate = float(config.percentage_rate or 0) / 100
        earned = sum(float(value or 0) * base_rate * float(win or 0) / 100 for value, win in rows)
        return earned, float(len(rows))

    logger.warning("Unknown commission calculation method %r on config %s", method, config.id)
    return 0.0, 0.0


def calculate_commission(
    db,
    *,
    tenant_id: str,
    level: Optional[str] = None,
    entity_id: Optional[str] = None,
    period_start: Any = None,
    period_end: Any = None,
) -> Dict[str, Any]:
    if not tenant_id:
        raise ServiceError("tenantId is required", 400)
    start, end = parse_period(period_start, period_end)

    configs = (
        db.query(CommissionConfiguration)
        .options(selectinload(CommissionConfiguration.stages))
        .filter_by(tenant_id=tenant_id)
        .filter(CommissionConfiguration.active.is_(True))
        .all()
    )
    members_query = (
        db.query(User, UserTenantMembership)
        .join(UserTenantMembership, UserTenantMembership.user_id == User.id)
        .filter(UserTenantMembership.tenant_id == tenant_id)
        .filter(UserTenantMembership.active.is_(True))
    )
    if level == "user" and entity_id:
        members_query = members_query.filter(User.id == entity_id)
    members = members_query.order_by(User.first_name.asc(), User.email.asc()).all()

    users: List[Dict[str, Any]] = []
    department_totals: Dict[str, float] = {}
    branch_totals: Dict[str, float] = {}
    for user, membership in members:
        total = 0.0
        breakdown = []
        for config in configs:
            earned, based_on = _earned_for_config(db, config, tenant_id, user.id, start, end)
            total += earned
            breakdown.append(
                {
                    "configName": config.name,
                    "configType": config.calculation_method,
                    "earned": round_money(earned),
                    "basedOnValue": round_money(based_on),
                    "rate": float(config.percentage_rate or 0),
                }
            )
        total = round_money(total)
        users.append(
            {
                "userId": user.id,
                "userName": user.full_name or user.email,
                "totalCommission": total,
                "breakdown": breakdown,
            }
        )
        if membership.department_id:
            department_totals[membership.department_id] = round_money(
                department_totals.get(membership.department_id, 0) + total
            )
        if membership.branch_id:
            branch_totals[membership.branch_id] = round_money(branch_totals.get(membership.branch_id, 0) + total)

    return {
        "users": users,
        "departmentTotals": department_totals,
        "branchTotals": branch_totals,
        "companyTotal": round_money(sum(item["totalCommission"] for item in users)),
    }
