from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from .models import Billing
from .store import RecordStore

logger = logging.getLogger(__name__)


class InvalidStatusTransition(ValueError):
    """Raised when a billing is moved out of a terminal status."""


def is_overdue(billing: Billing, today: date) -> bool:
    # Overdue is derived at read time and never stored.
    return billing.status == "pending" and billing.due_date < today


def mark_paid(billing: Billing, *, paid_at: datetime | None = None) -> Billing:
    if billing.status != "pending":
        raise InvalidStatusTransition(f"billing {billing.id} is {billing.status}; only pending billings can be paid")
    return billing.model_copy(update={"status": "paid", "paid_at": paid_at or datetime.now(timezone.utc)})


def mark_cancelled(billing: Billing) -> Billing:
    if billing.status != "pending":
        raise InvalidStatusTransition(
            f"billing {billing.id} is {billing.status}; only pending billings can be cancelled"
        )
    return billing.model_copy(update={"status": "cancelled"})


def scan_overdue(store: RecordStore, today: date) -> list[Billing]:
    overdue: list[Billing] = []
    for owner_id in store.list_owner_ids():
        for billing in store.list_billings(owner_id, status="pending"):
            if is_overdue(billing, today):
                logger.info("billing %s is overdue (due %s)", billing.id, billing.due_date.isoformat())
                overdue.append(billing)
    return overdue
