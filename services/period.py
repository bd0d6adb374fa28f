from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Optional, Tuple

from shared.errors import ServiceError


def parse_bound(value: Any, *, end: bool = False) -> Optional[datetime]:
    """
    Parse a period bound into a naive UTC datetime.
    A date-only end bound covers the whole day.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end else time.min)
    raw = str(value).strip()
    try:
        if len(raw) == 10:
            parsed_date = date.fromisoformat(raw)
            return datetime.combine(parsed_date, time.max if end else time.min)
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ServiceError(f"Invalid date: {value}", 400) from exc
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def parse_period(start: Any, end: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    return parse_bound(start), parse_bound(end, end=True)


def round_money(value: float) -> float:
    return round(float(value or 0), 2)
