"""
StoreAudit — Remediation Deadline

Stores get ACTION_DEADLINE_BUSINESS_DAYS business days after audit completion
to answer every corrective action. A business day is any calendar day except
Sunday (Saturday counts).

Status (day-granular, time of day ignored):
  overdue  — the deadline day is behind us
  warning  — no business days left (deadline is today)
  ok       — anything else
  resolved — audit-level only: every action already approved
"""

from datetime import date, datetime, timedelta

from storeaudit.config import ACTION_DEADLINE_BUSINESS_DAYS
from storeaudit.records import parse_ts

SUNDAY = 6  # date.weekday()


def is_business_day(day) -> bool:
    return day.weekday() != SUNDAY


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def calculate_deadline(completed_at: datetime, business_days: int = ACTION_DEADLINE_BUSINESS_DAYS) -> datetime:
    """Walk forward one calendar day at a time, counting non-Sundays."""
    current = completed_at
    counted = 0
    while counted < business_days:
        current = current + timedelta(days=1)
        if is_business_day(current):
            counted += 1
    return current


def business_days_between(start, end) -> int:
    """Non-Sunday days in (start, end]. 0 when end is not after start."""
    current = _as_date(start)
    end = _as_date(end)
    count = 0
    while current < end:
        current = current + timedelta(days=1)
        if is_business_day(current):
            count += 1
    return count


def deadline_status(deadline, today=None) -> str:
    today = _as_date(today or datetime.now())
    deadline_day = _as_date(parse_ts(deadline))
    if today > deadline_day:
        return "overdue"
    if business_days_between(today, deadline_day) == 0:
        return "warning"
    return "ok"


def days_remaining(deadline, today=None) -> int:
    """Signed calendar days until the deadline day (negative once overdue)."""
    today = _as_date(today or datetime.now())
    return (_as_date(parse_ts(deadline)) - today).days


def audit_deadline_status(audit: dict, today=None):
    if audit.get("allActionsResolved"):
        return "resolved"
    if not audit.get("actionDeadline"):
        return None
    return deadline_status(audit["actionDeadline"], today)
