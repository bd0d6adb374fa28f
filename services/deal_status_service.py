from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func as sa_func

from shared.db import Activity, Deal, DealStatus, DealStatusHistory, Notification, User, utcnow
from shared.errors import ServiceError

logger = logging.getLogger(__name__)

REASON_KEYWORDS = ("lost", "not active", "paused", "cancelled", "rejected")
PAUSE_KEYWORD = "paused"
AUTO_RESUME_REASON = "Automatically resumed after pause period ended"


def status_requires_reason(status: DealStatus) -> bool:
    if status.requires_reason:
        return True
    name = (status.name or "").lower()
    return any(keyword in name for keyword in REASON_KEYWORDS)


def status_is_pause(status: DealStatus) -> bool:
    if status.is_pause_status:
        return True
    return PAUSE_KEYWORD in (status.name or "").lower()


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ServiceError(f"Invalid date: {value}", 400) from exc


def _get_deal(db, tenant_id: str, deal_id: str) -> Deal:
    deal = (
        db.query(Deal)
        .filter_by(id=deal_id, tenant_id=tenant_id)
        .filter(Deal.deleted_at.is_(None))
        .one_or_none()
    )
    if not deal:
        raise ServiceError("Deal not found", 404)
    return deal


def change_deal_status(
    db,
    *,
    tenant_id: str,
    deal_id: str,
    new_status_id: str,
    reason: Optional[str],
    resume_date: Any = None,
    changed_by: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Move a deal to another workflow status.

    Statuses flagged (or named) as needing a reason reject a blank reason.
    Pause statuses also need a resume date later than today; any other
    status clears a previously scheduled resume date. Every change appends
    one history row and one timeline activity.
    """
    if not new_status_id:
        raise ServiceError("new_status_id is required", 400)
    deal = _get_deal(db, tenant_id, deal_id)
    status = db.query(DealStatus).filter_by(id=new_status_id, tenant_id=tenant_id).one_or_none()
    if not status or status.active is False:
        raise ServiceError("Deal status not found", 404)
    if deal.deal_status_id == status.id:
        raise ServiceError(f'Deal is already "{status.name}"', 400)

    cleaned_reason = (reason or "").strip()
    if status_requires_reason(status) and not cleaned_reason:
        raise ServiceError(f'A reason is required to mark this deal as "{status.name}"', 400)

    pause = status_is_pause(status)
    parsed_resume = parse_date(resume_date) if pause else None
    if pause:
        today = today or utcnow().date()
        if not parsed_resume:
            raise ServiceError("A resume date is required for paused deals", 400)
        if parsed_resume <= today:
            raise ServiceError("Resume date must be in the future", 400)

    old_status_id = deal.deal_status_id
    deal.deal_status_id = status.id
    deal.status_resume_date = parsed_resume
    deal.updated_at = utcnow()

    history = DealStatusHistory(
        tenant_id=tenant_id,
        deal_id=deal.id,
        old_status_id=old_status_id,
        new_status_id=status.id,
        reason=cleaned_reason,
        resume_date=parsed_resume,
        changed_by=changed_by,
    )
    db.add(history)

    description = f'Status changed to "{status.name}".'
    if cleaned_reason:
        description = f'Status changed to "{status.name}". Reason: {cleaned_reason}'
    if parsed_resume:
        description += f". Expected resume: {parsed_resume.isoformat()}"
    db.add(
        Activity(
            tenant_id=tenant_id,
            deal_id=deal.id,
            type="note",
            title="Status Changed",
            description=description,
            created_by=changed_by,
        )
    )
    db.commit()
    logger.info("Deal %s moved to status %s by %s", deal.id, status.id, changed_by)
    return {
        "deal_id": deal.id,
        "deal_status_id": status.id,
        "status_name": status.name,
        "status_resume_date": parsed_resume.isoformat() if parsed_resume else None,
        "history_id": history.id,
    }


def list_status_history(db, tenant_id: str, deal_id: str) -> List[Dict[str, Any]]:
    _get_deal(db, tenant_id, deal_id)
    rows = (
        db.query(DealStatusHistory)
        .filter_by(tenant_id=tenant_id, deal_id=deal_id)
        .order_by(DealStatusHistory.created_at.desc())
        .all()
    )
    status_ids = {row.old_status_id for row in rows} | {row.new_status_id for row in rows}
    status_ids.discard(None)
    names = {
        status.id: status.name
        for status in db.query(DealStatus).filter(DealStatus.id.in_(status_ids)).all()
    } if status_ids else {}
    user_ids = {row.changed_by for row in rows if row.changed_by}
    users = {
        user.id: user.full_name or user.email
        for user in db.query(User).filter(User.id.in_(user_ids)).all()
    } if user_ids else {}
    return [
        {
            "id": row.id,
            "old_status_id": row.old_status_id,
            "old_status_name": names.get(row.old_status_id),
            "new_status_id": row.new_status_id,
            "new_status_name": names.get(row.new_status_id),
            "reason": row.reason,
            "resume_date": row.resume_date.isoformat() if row.resume_date else None,
            "changed_by": row.changed_by,
            "changed_by_name": users.get(row.changed_by) if row.changed_by else "System",
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]


def find_active_status(db, tenant_id: str) -> Optional[DealStatus]:
    lowered = sa_func.lower(DealStatus.name)
    return (
        db.query(DealStatus)
        .filter(DealStatus.tenant_id == tenant_id)
        .filter(DealStatus.active.is_(True))
        .filter(lowered.like("%active%"))
        .filter(~lowered.like("%not%"))
        .order_by(DealStatus.sort_order.asc())
        .first()
    )


def fetch_due_paused_deals(db, today: Optional[date] = None) -> List[Deal]:
    today = today or utcnow().date()
    return (
        db.query(Deal)
        .filter(Deal.status_resume_date.isnot(None))
        .filter(Deal.status_resume_date <= today)
        .filter(Deal.deleted_at.is_(None))
        .order_by(Deal.status_resume_date.asc())
        .all()
    )


def _resume_deal(db, deal: Deal) -> None:
    active_status = find_active_status(db, deal.tenant_id)
    if not active_status:
        raise ServiceError("Could not find Active status")

    old_status_id = deal.deal_status_id
    deal.deal_status_id = active_status.id
    deal.status_resume_date = None
    deal.updated_at = utcnow()

    db.add(
        DealStatusHistory(
            tenant_id=deal.tenant_id,
            deal_id=deal.id,
            old_status_id=old_status_id,
            new_status_id=active_status.id,
            reason=AUTO_RESUME_REASON,
            changed_by=None,
        )
    )
    db.add(
        Activity(
            tenant_id=deal.tenant_id,
            deal_id=deal.id,
            type="note",
            title="Deal Automatically Resumed",
            description=(
                f'Deal "{deal.name}" was automatically resumed from paused status '
                "after the scheduled resume date."
            ),
            created_by=deal.assigned_to,
        )
    )
    if deal.assigned_to:
        db.add(
            Notification(
                tenant_id=deal.tenant_id,
                user_id=deal.assigned_to,
                title="Deal Resumed",
                message=f'Deal "{deal.name}" has been automatically resumed from paused status.',
                type="deal_resumed",
                entity_type="deal",
                entity_id=deal.id,
            )
        )


def resume_paused_deals(db, today: Optional[date] = None) -> Dict[str, Any]:
    """Resume every paused deal whose resume date has arrived, one commit per deal."""
    deals = fetch_due_paused_deals(db, today)
    logger.info("Found %s paused deals to resume", len(deals))
    results: Dict[str, Any] = {"processed": 0, "resumed": 0, "errors": []}
    for deal in deals:
        results["processed"] += 1
        deal_id = deal.id
        try:
            _resume_deal(db, deal)
            db.commit()
            results["resumed"] += 1
            logger.info("Resumed deal %s", deal_id)
        except ServiceError as exc:
            db.rollback()
            logger.warning("Deal %s not resumed: %s", deal_id, exc.message)
            results["errors"].append(f"Deal {deal_id}: {exc.message}")
        except Exception as exc:  # pylint: disable=broad-except
            db.rollback()
            logger.error("Error processing deal %s: %s", deal_id, exc)
            results["errors"].append(f"Deal {deal_id}: {exc}")
    return results
