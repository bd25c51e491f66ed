from __future__ import annotations

from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from .models import (
    Billing,
    BillingCreate,
    CalendarEvent,
    ChannelInstance,
    ChannelSettings,
    ChannelStatus,
    Customer,
    MessageHistory,
    MessageHistoryCreate,
    MessageTemplate,
    TriggerKind,
)


class RecordNotFoundError(KeyError):
    """Raised when an operation references a record that does not exist."""


class BillingNotFoundError(RecordNotFoundError):
    """Raised when an operation references a billing id that does not exist."""


class ChannelInstanceNotFoundError(RecordNotFoundError):
    """Raised when an operation references a channel instance that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RecordStore(Protocol):
    def reset(self) -> None: ...

    def list_owner_ids(self) -> list[str]: ...

    def add_customer(
        self,
        owner_id: str,
        *,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        payment_key: str | None = None,
    ) -> Customer: ...

    def get_customer(self, customer_id: int, owner_id: str) -> Customer | None: ...

    def create_billing(self, payload: BillingCreate) -> Billing: ...

    def get_billing(self, billing_id: int, owner_id: str) -> Billing | None: ...

    def save_billing(self, billing: Billing) -> Billing: ...

    def list_billings(
        self,
        owner_id: str,
        *,
        status: str | None = None,
        due_date: date | None = None,
    ) -> list[Billing]: ...

    def find_occurrence(self, parent_billing_id: int, due_date: date) -> Billing | None: ...

    def create_calendar_event(
        self,
        owner_id: str,
        *,
        billing_id: int,
        title: str,
        description: str | None,
        start_at: datetime,
        is_all_day: bool = False,
    ) -> CalendarEvent: ...

    def list_calendar_events(self, owner_id: str) -> list[CalendarEvent]: ...

    def add_message_template(
        self,
        owner_id: str,
        *,
        name: str,
        content: str,
        trigger_kind: TriggerKind = "manual",
        trigger_days: int = 0,
        is_active: bool = True,
    ) -> MessageTemplate: ...

    def list_message_templates(self, owner_id: str) -> list[MessageTemplate]: ...

    def create_message_history(self, payload: MessageHistoryCreate) -> MessageHistory: ...

    def list_message_history(self, owner_id: str) -> list[MessageHistory]: ...

    def has_message_since(self, billing_id: int, template_id: int, since: datetime) -> bool: ...

    def list_due_scheduled_messages(self, now: datetime) -> list[MessageHistory]: ...

    def complete_scheduled_message(
        self,
        message_id: int,
        *,
        status: str,
        sent_at: datetime | None,
    ) -> bool: ...

    def add_channel_instance(
        self,
        owner_id: str,
        *,
        name: str,
        instance_name: str,
        access_token: str | None = None,
        status: ChannelStatus = "created",
        is_connected: bool = False,
        is_default: bool = False,
    ) -> ChannelInstance: ...

    def list_channel_instances(self, owner_id: str | None = None) -> list[ChannelInstance]: ...

    def get_channel_instance(self, instance_id: int, owner_id: str) -> ChannelInstance | None: ...

    def update_channel_instance_status(
        self,
        instance_id: int,
        *,
        status: ChannelStatus,
        is_connected: bool,
    ) -> ChannelInstance: ...

    def save_channel_settings(self, settings: ChannelSettings) -> ChannelSettings: ...

    def get_channel_settings(self, owner_id: str) -> ChannelSettings | None: ...


class InMemoryRecordStore:
    """Deterministic in-memory record store with incremental ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._customer_ids = count(1)
        self._billing_ids = count(1)
        self._template_ids = count(1)
        self._message_ids = count(1)
        self._event_ids = count(1)
        self._instance_ids = count(1)
        self._customers: dict[int, Customer] = {}
        self._billings: dict[int, Billing] = {}
        self._templates: dict[int, MessageTemplate] = {}
        self._messages: dict[int, MessageHistory] = {}
        self._events: dict[int, CalendarEvent] = {}
        self._instances: dict[int, ChannelInstance] = {}
        self._channel_settings: dict[str, ChannelSettings] = {}

    def reset(self) -> None:
        with self._lock:
            self._customer_ids = count(1)
            self._billing_ids = count(1)
            self._template_ids = count(1)
            self._message_ids = count(1)
            self._event_ids = count(1)
            self._instance_ids = count(1)
            self._customers.clear()
            self._billings.clear()
            self._templates.clear()
            self._messages.clear()
            self._events.clear()
            self._instances.clear()
            self._channel_settings.clear()

    def list_owner_ids(self) -> list[str]:
        with self._lock:
            owners = {row.owner_id for row in self._billings.values()}
            owners.update(row.owner_id for row in self._templates.values())
            owners.update(row.owner_id for row in self._instances.values())
            return sorted(owners)

    def add_customer(
        self,
        owner_id: str,
        *,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        payment_key: str | None = None,
    ) -> Customer:
        with self._lock:
            customer = Customer(
                id=next(self._customer_ids),
                owner_id=owner_id,
                name=name,
                email=email,
                phone=phone,
                payment_key=payment_key,
            )
            self._customers[customer.id] = customer
            return customer.model_copy()

    def get_customer(self, customer_id: int, owner_id: str) -> Customer | None:
        with self._lock:
            row = self._customers.get(customer_id)
            if row is None or row.owner_id != owner_id:
                return None
            return row.model_copy()

    def create_billing(self, payload: BillingCreate) -> Billing:
        with self._lock:
            billing = Billing(id=next(self._billing_ids), **payload.model_dump())
            self._billings[billing.id] = billing
            return billing.model_copy()

    def get_billing(self, billing_id: int, owner_id: str) -> Billing | None:
        with self._lock:
            row = self._billings.get(billing_id)
            if row is None or row.owner_id != owner_id:
                return None
            return row.model_copy()

    def save_billing(self, billing: Billing) -> Billing:
        with self._lock:
            existing = self._billings.get(billing.id)
            if existing is None or existing.owner_id != billing.owner_id:
                raise BillingNotFoundError(billing.id)
            self._billings[billing.id] = billing.model_copy()
            return billing.model_copy()

    def list_billings(
        self,
        owner_id: str,
        *,
        status: str | None = None,
        due_date: date | None = None,
    ) -> list[Billing]:
        with self._lock:
            rows = [
                row
                for row in self._billings.values()
                if row.owner_id == owner_id
                and (status is None or row.status == status)
                and (due_date is None or row.due_date == due_date)
            ]
            return [row.model_copy() for row in sorted(rows, key=lambda value: value.id)]

    def find_occurrence(self, parent_billing_id: int, due_date: date) -> Billing | None:
        with self._lock:
            for row in self._billings.values():
                if row.parent_billing_id == parent_billing_id and row.due_date == due_date:
                    return row.model_copy()
            return None

    def create_calendar_event(
        self,
        owner_id: str,
        *,
        billing_id: int,
        title: str,
        description: str | None,
        start_at: datetime,
        is_all_day: bool = False,
    ) -> CalendarEvent:
        with self._lock:
            event = CalendarEvent(
                id=next(self._event_ids),
                owner_id=owner_id,
                billing_id=billing_id,
                title=title,
                description=description,
                start_at=start_at,
                is_all_day=is_all_day,
            )
            self._events[event.id] = event
            return event.model_copy()

    def list_calendar_events(self, owner_id: str) -> list[CalendarEvent]:
        with self._lock:
            return [row.model_copy() for row in self._events.values() if row.owner_id == owner_id]

    def add_message_template(
        self,
        owner_id: str,
        *,
        name: str,
        content: str,
        trigger_kind: TriggerKind = "manual",
        trigger_days: int = 0,
        is_active: bool = True,
    ) -> MessageTemplate:
        with self._lock:
            template = MessageTemplate(
                id=next(self._template_ids),
                owner_id=owner_id,
                name=name,
                content=content,
                trigger_kind=trigger_kind,
                trigger_days=trigger_days,
                is_active=is_active,
            )
            self._templates[template.id] = template
            return template.model_copy()

    def list_message_templates(self, owner_id: str) -> list[MessageTemplate]:
        with self._lock:
            return [row.model_copy() for row in self._templates.values() if row.owner_id == owner_id]

    def create_message_history(self, payload: MessageHistoryCreate) -> MessageHistory:
        with self._lock:
            message = MessageHistory(id=next(self._message_ids), **payload.model_dump())
            self._messages[message.id] = message
            return message.model_copy()

    def list_message_history(self, owner_id: str) -> list[MessageHistory]:
        with self._lock:
            return [row.model_copy() for row in self._messages.values() if row.owner_id == owner_id]

    def has_message_since(self, billing_id: int, template_id: int, since: datetime) -> bool:
        cutoff = _coerce_utc(since)
        with self._lock:
            return any(
                row.billing_id == billing_id
                and row.template_id == template_id
                and _coerce_utc(row.created_at) >= cutoff
                for row in self._messages.values()
            )

    def list_due_scheduled_messages(self, now: datetime) -> list[MessageHistory]:
        cutoff = _coerce_utc(now)
        with self._lock:
            return [
                row.model_copy()
                for row in sorted(self._messages.values(), key=lambda value: value.id)
                if row.status == "scheduled"
                and row.scheduled_for is not None
                and _coerce_utc(row.scheduled_for) <= cutoff
            ]

    def complete_scheduled_message(
        self,
        message_id: int,
        *,
        status: str,
        sent_at: datetime | None,
    ) -> bool:
        if status not in {"sent", "failed"}:
            raise ValueError(f"scheduled messages can only become sent or failed, not {status}")
        with self._lock:
            row = self._messages.get(message_id)
            if row is None:
                raise RecordNotFoundError(message_id)
            if row.status != "scheduled":
                return False
            self._messages[message_id] = row.model_copy(update={"status": status, "sent_at": sent_at})
            return True

    def add_channel_instance(
        self,
        owner_id: str,
        *,
        name: str,
        instance_name: str,
        access_token: str | None = None,
        status: ChannelStatus = "created",
        is_connected: bool = False,
        is_default: bool = False,
    ) -> ChannelInstance:
        with self._lock:
            if is_default:
                for instance_id, row in self._instances.items():
                    if row.owner_id == owner_id and row.is_default:
                        self._instances[instance_id] = row.model_copy(update={"is_default": False})
            instance = ChannelInstance(
                id=next(self._instance_ids),
                owner_id=owner_id,
                name=name,
                instance_name=instance_name,
                access_token=access_token,
                status=status,
                is_connected=is_connected,
                is_default=is_default,
            )
            self._instances[instance.id] = instance
            return instance.model_copy()

    def list_channel_instances(self, owner_id: str | None = None) -> list[ChannelInstance]:
        with self._lock:
            return [
                row.model_copy()
                for row in sorted(self._instances.values(), key=lambda value: value.id)
                if owner_id is None or row.owner_id == owner_id
            ]

    def get_channel_instance(self, instance_id: int, owner_id: str) -> ChannelInstance | None:
        with self._lock:
            row = self._instances.get(instance_id)
            if row is None or row.owner_id != owner_id:
                return None
            return row.model_copy()

    def update_channel_instance_status(
        self,
        instance_id: int,
        *,
        status: ChannelStatus,
        is_connected: bool,
    ) -> ChannelInstance:
        with self._lock:
            row = self._instances.get(instance_id)
            if row is None:
                raise ChannelInstanceNotFoundError(instance_id)
            updated = row.model_copy(update={"status": status, "is_connected": is_connected})
            self._instances[instance_id] = updated
            return updated.model_copy()

    def save_channel_settings(self, settings: ChannelSettings) -> ChannelSettings:
        with self._lock:
            self._channel_settings[settings.owner_id] = settings.model_copy()
            return settings.model_copy()

    def get_channel_settings(self, owner_id: str) -> ChannelSettings | None:
        with self._lock:
            row = self._channel_settings.get(owner_id)
            return row.model_copy() if row is not None else None
