from __future__ import annotations

from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

SUPPORTED_RECURRENCE_KINDS = ("daily", "weekly", "monthly", "yearly")


class UnsupportedRecurrenceKind(ValueError):
    """Raised when a recurrence kind has no next-date rule."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unsupported recurrence kind: {kind}")
        self.kind = kind


def next_due_date(current_due: date, kind: str, interval: int) -> date:
    """Return the due date that follows ``current_due`` for a recurrence rule.

    Month and year steps clamp to the last valid day of the target month, so
    Jan 31 plus one month lands on Feb 28 (or Feb 29 in a leap year).
    """
    if interval < 1:
        raise ValueError("recurrence interval must be a positive integer")

    if kind == "daily":
        return current_due + timedelta(days=interval)
    if kind == "weekly":
        return current_due + timedelta(days=7 * interval)
    if kind == "monthly":
        return current_due + relativedelta(months=interval)
    if kind == "yearly":
        return current_due + relativedelta(years=interval)
    raise UnsupportedRecurrenceKind(kind)
