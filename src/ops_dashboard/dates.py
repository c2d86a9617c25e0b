"""Calendar bucketing for due dates. Weeks start on Sunday."""

from __future__ import annotations

from datetime import date, datetime, timedelta


def parse_date(value: str | date | None) -> date | None:
    """Parse an ISO date or timestamp into a calendar date, None if malformed."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) < 10:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _today(today: date | None) -> date:
    return today if today is not None else date.today()


def week_bounds(today: date | None = None) -> tuple[date, date]:
    """First (Sunday) and last (Saturday) day of the week containing today."""
    day = _today(today)
    start = day - timedelta(days=(day.weekday() + 1) % 7)
    return start, start + timedelta(days=6)


def is_overdue(due_date: str | date | None, status: str, today: date | None = None) -> bool:
    """Due strictly before the start of today and not done."""
    if status == "done":
        return False
    due = parse_date(due_date)
    if due is None:
        return False
    return due < _today(today)


def is_due_today(due_date: str | date | None, today: date | None = None) -> bool:
    due = parse_date(due_date)
    return due is not None and due == _today(today)


def is_due_this_week(due_date: str | date | None, today: date | None = None) -> bool:
    due = parse_date(due_date)
    if due is None:
        return False
    start, end = week_bounds(today)
    return start <= due <= end


def today_iso(today: date | None = None) -> str:
    return _today(today).isoformat()
