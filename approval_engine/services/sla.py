"""
SLA arithmetic for approval workflows.

Pure functions; no database access.  Every function normalises its datetime
arguments to aware UTC first, because SQLite hands back naive timestamps.
"""

import math
from datetime import datetime, timedelta, timezone

# Items with strictly less than URGENT_WINDOW_HOURS left are urgent, both for
# the score and for the queue's "urgent" count.  Remaining bands:
# (hours remaining strictly below, score).
URGENT_WINDOW_HOURS = 2
URGENCY_URGENT = 90
URGENCY_BANDS = ((8, 70), (24, 50))
URGENCY_OVERDUE = 100
URGENCY_DEFAULT = 10


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_due_date(start: datetime, sla_hours: float) -> datetime:
    """Due date for a stage entered at ``start`` with ``sla_hours`` allowed."""
    return as_utc(start) + timedelta(hours=float(sla_hours))


def is_within_sla(due: datetime, now: datetime | None = None) -> bool:
    """True when ``now`` is at or before the due date.

    Used only to stamp history entries; it never blocks a decision.
    """
    now = as_utc(now) or utc_now()
    return now <= as_utc(due)


def hours_remaining(due: datetime, now: datetime | None = None) -> float:
    """Hours until ``due``, floored at zero."""
    now = as_utc(now) or utc_now()
    return max(0.0, (as_utc(due) - now).total_seconds() / 3600)


def is_urgent(due: datetime, now: datetime | None = None,
              window_hours: float = URGENT_WINDOW_HOURS) -> bool:
    """Not overdue and strictly less than ``window_hours`` left."""
    now = as_utc(now) or utc_now()
    due = as_utc(due)
    return now <= due < now + timedelta(hours=window_hours)


def urgency_score(due: datetime, now: datetime | None = None,
                  urgent_window_hours: float = URGENT_WINDOW_HOURS) -> int:
    now = as_utc(now) or utc_now()
    due = as_utc(due)
    if now > due:
        return URGENCY_OVERDUE
    if is_urgent(due, now, urgent_window_hours):
        return URGENCY_URGENT
    remaining = (due - now).total_seconds() / 3600
    for below, score in URGENCY_BANDS:
        if remaining < below:
            return score
    return URGENCY_DEFAULT


def thresholds_crossed(due: datetime, threshold_hours: float, now: datetime | None = None) -> int:
    """Number of escalation thresholds crossed since ``due``.

    0 while the SLA still holds; 1 as soon as it is breached; one more for
    every further ``threshold_hours`` elapsed.  The sweeper escalates a
    workflow only while this exceeds the levels already applied, which makes
    repeated sweeps inside one window idempotent.
    """
    now = as_utc(now) or utc_now()
    due = as_utc(due)
    if now <= due:
        return 0
    if not threshold_hours or threshold_hours <= 0:
        return 1
    overdue_hours = (now - due).total_seconds() / 3600
    return 1 + math.floor(overdue_hours / threshold_hours)
