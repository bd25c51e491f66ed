from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Literal
from zoneinfo import ZoneInfo

from .models import Billing, Customer, MessageChannel, MessageHistoryCreate, MessageTemplate, TriggerKind
from .notifier import ChannelSendResult, EmailSender, WhatsAppSender, mask_contact_target
from .store import RecordStore
from .templates import build_billing_variables, render_template

logger = logging.getLogger(__name__)

PassKind = Literal["reminder", "overdue"]


@dataclass
class DispatchSummary:
    kind: PassKind
    evaluated: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass(frozen=True)
class DeliveryOutcome:
    channel: MessageChannel
    sent: bool
    sent_at: datetime | None = None
    error_code: str | None = None


class NotificationDispatcher:
    """Matches before/after-due templates to billings and delivers the rendered message.

    Email is always attempted first; WhatsApp is the fallback when the customer
    has no email address or the email send failed.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        email_sender: EmailSender,
        whatsapp_sender: WhatsAppSender,
        timezone_name: str = "America/Sao_Paulo",
    ) -> None:
        self._store = store
        self._email_sender = email_sender
        self._whatsapp_sender = whatsapp_sender
        self._timezone = ZoneInfo(timezone_name)

    def run_reminder_pass(self, today: date) -> DispatchSummary:
        return self._run_pass("reminder", "before_due", today)

    def run_overdue_pass(self, today: date) -> DispatchSummary:
        return self._run_pass("overdue", "after_due", today)

    @staticmethod
    def trigger_date(template: MessageTemplate, today: date) -> date:
        if template.trigger_kind == "before_due":
            return today + timedelta(days=template.trigger_days)
        # An after-due template with no offset fires one day past due.
        return today - timedelta(days=template.trigger_days or 1)

    def _run_pass(self, kind: PassKind, trigger_kind: TriggerKind, today: date) -> DispatchSummary:
        summary = DispatchSummary(kind=kind)
        day_start = datetime.combine(today, time.min, tzinfo=self._timezone)
        for owner_id in self._store.list_owner_ids():
            templates = [
                row
                for row in self._store.list_message_templates(owner_id)
                if row.is_active and row.trigger_kind == trigger_kind
            ]
            for template in templates:
                target = self.trigger_date(template, today)
                billings = self._store.list_billings(owner_id, status="pending", due_date=target)
                for billing in billings:
                    summary.evaluated += 1
                    try:
                        self._dispatch_one(billing, template, day_start, summary)
                    except Exception:
                        summary.errors += 1
                        logger.exception(
                            "%s notification failed for billing %s and template %s",
                            kind,
                            billing.id,
                            template.id,
                        )
        logger.info(
            "%s pass done: evaluated=%d sent=%d failed=%d skipped=%d errors=%d",
            kind,
            summary.evaluated,
            summary.sent,
            summary.failed,
            summary.skipped,
            summary.errors,
        )
        return summary

    def _dispatch_one(
        self,
        billing: Billing,
        template: MessageTemplate,
        day_start: datetime,
        summary: DispatchSummary,
    ) -> None:
        if self._store.has_message_since(billing.id, template.id, day_start):
            summary.skipped += 1
            logger.debug("billing %s already notified today with template %s", billing.id, template.id)
            return

        customer = self._store.get_customer(billing.customer_id, billing.owner_id)
        if customer is None:
            summary.skipped += 1
            logger.warning("customer %s not found for billing %s", billing.customer_id, billing.id)
            return

        content = render_template(template.content, build_billing_variables(billing, customer))
        outcome = self.deliver(billing.owner_id, customer, content)
        self._store.create_message_history(
            MessageHistoryCreate(
                owner_id=billing.owner_id,
                customer_id=customer.id,
                billing_id=billing.id,
                template_id=template.id,
                content=content,
                channel=outcome.channel,
                status="sent" if outcome.sent else "failed",
                sent_at=outcome.sent_at,
                recipient_phone=customer.phone if outcome.channel == "whatsapp" else None,
            )
        )
        if outcome.sent:
            summary.sent += 1
        else:
            summary.failed += 1
            logger.warning(
                "could not notify customer %s about billing %s (last channel %s, error %s)",
                customer.id,
                billing.id,
                outcome.channel,
                outcome.error_code,
            )

    def deliver(self, owner_id: str, customer: Customer, content: str) -> DeliveryOutcome:
        channel: MessageChannel = "email"
        last: ChannelSendResult | None = None

        if customer.email:
            last = self._email_sender.send_email(to=customer.email, customer_name=customer.name, content=content)
            if last.ok:
                logger.info("email sent to %s", mask_contact_target(customer.email, "email"))
                return DeliveryOutcome(channel="email", sent=True, sent_at=last.attempted_at)

        if customer.phone:
            channel = "whatsapp"
            last = self._whatsapp_sender.send_text(owner_id=owner_id, phone=customer.phone, content=content)
            if last.ok:
                logger.info("whatsapp message sent to %s", mask_contact_target(customer.phone, "whatsapp"))
                return DeliveryOutcome(channel="whatsapp", sent=True, sent_at=last.attempted_at)

        error_code = last.error_code if last is not None else "no_contact_channel"
        return DeliveryOutcome(channel=channel, sent=False, error_code=error_code)
