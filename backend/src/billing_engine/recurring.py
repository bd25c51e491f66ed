from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

from .models import Billing, BillingCreate
from .recurrence import next_due_date
from .store import RecordStore
from .templates import format_brl

logger = logging.getLogger(__name__)

CALENDAR_EVENT_TIME = time(9, 0)


@dataclass
class GenerationSummary:
    evaluated: int = 0
    created: list[int] = field(default_factory=list)
    not_due: int = 0
    ended: int = 0
    already_generated: int = 0
    errors: int = 0


class RecurringBillingGenerator:
    """Creates the next occurrence of every recurring original billing that has come due."""

    def __init__(
        self,
        *,
        store: RecordStore,
        timezone_name: str = "America/Sao_Paulo",
        skip_existing_occurrence: bool = True,
    ) -> None:
        self._store = store
        self._timezone = ZoneInfo(timezone_name)
        self._skip_existing_occurrence = skip_existing_occurrence

    def run(self, today: date) -> GenerationSummary:
        summary = GenerationSummary()
        for owner_id in self._store.list_owner_ids():
            originals = [
                billing
                for billing in self._store.list_billings(owner_id)
                if billing.is_recurring and billing.is_original
            ]
            for billing in originals:
                summary.evaluated += 1
                try:
                    self._generate_next(billing, today, summary)
                except Exception:
                    summary.errors += 1
                    logger.exception("failed to create recurring occurrence for billing %s", billing.id)
        logger.info(
            "recurring generation done: evaluated=%d created=%d ended=%d errors=%d",
            summary.evaluated,
            len(summary.created),
            summary.ended,
            summary.errors,
        )
        return summary

    def _generate_next(self, billing: Billing, today: date, summary: GenerationSummary) -> None:
        if billing.due_date > today:
            summary.not_due += 1
            return

        next_due = next_due_date(billing.due_date, billing.recurrence_kind, billing.recurrence_interval)
        if billing.recurrence_end_date is not None and next_due > billing.recurrence_end_date:
            summary.ended += 1
            logger.info("recurring billing %s has reached its end date", billing.id)
            return

        if self._skip_existing_occurrence and self._store.find_occurrence(billing.id, next_due) is not None:
            summary.already_generated += 1
            return

        occurrence = self._store.create_billing(
            BillingCreate(
                owner_id=billing.owner_id,
                customer_id=billing.customer_id,
                amount=billing.amount,
                description=billing.description,
                due_date=next_due,
                status="pending",
                recurrence_kind=billing.recurrence_kind,
                recurrence_interval=billing.recurrence_interval,
                recurrence_end_date=billing.recurrence_end_date,
                parent_billing_id=billing.id,
                payment_key=billing.payment_key,
            )
        )
        self._store.create_calendar_event(
            billing.owner_id,
            billing_id=occurrence.id,
            title=f"{occurrence.description} - {format_brl(occurrence.amount)}",
            description=f"Cobrança recorrente: {occurrence.description}",
            start_at=datetime.combine(next_due, CALENDAR_EVENT_TIME, tzinfo=self._timezone),
            is_all_day=False,
        )
        summary.created.append(occurrence.id)
        logger.info(
            "created recurring billing %s for customer %s, due %s",
            occurrence.id,
            billing.customer_id,
            next_due.isoformat(),
        )
