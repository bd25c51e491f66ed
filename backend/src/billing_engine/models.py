from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

BillingStatus = Literal["pending", "paid", "cancelled"]
RecurrenceKind = Literal["none", "daily", "weekly", "monthly", "yearly"]
TriggerKind = Literal["manual", "before_due", "after_due"]
MessageChannel = Literal["email", "whatsapp"]
MessageStatus = Literal["sent", "failed", "scheduled"]
ChannelStatus = Literal["created", "connecting", "connected", "disconnected", "unknown"]

CENTS = Decimal("0.01")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def quantize_amount(value: Decimal | float | int | str) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class Customer(BaseModel):
    id: int
    owner_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    payment_key: str | None = None

    @field_validator("email", "phone", "payment_key")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class BillingCreate(BaseModel):
    owner_id: str
    customer_id: int
    amount: Decimal
    description: str
    due_date: date
    status: BillingStatus = "pending"
    recurrence_kind: RecurrenceKind = "none"
    recurrence_interval: int = Field(default=1, ge=1)
    recurrence_end_date: date | None = None
    parent_billing_id: int | None = None
    payment_key: str | None = None
    paid_at: datetime | None = None

    @field_validator("amount")
    @classmethod
    def _normalize_amount(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("amount must not be negative")
        return quantize_amount(value)


class Billing(BillingCreate):
    id: int
    created_at: datetime = Field(default_factory=_now_utc)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_kind != "none"

    @property
    def is_original(self) -> bool:
        return self.parent_billing_id is None


class MessageTemplate(BaseModel):
    id: int
    owner_id: str
    name: str
    content: str
    trigger_kind: TriggerKind = "manual"
    trigger_days: int = Field(default=0, ge=0)
    is_active: bool = True


class MessageHistoryCreate(BaseModel):
    owner_id: str
    customer_id: int
    billing_id: int | None = None
    template_id: int | None = None
    content: str
    channel: MessageChannel
    status: MessageStatus
    sent_at: datetime | None = None
    scheduled_for: datetime | None = None
    recipient_phone: str | None = None

    @model_validator(mode="after")
    def _validate_schedule(self) -> MessageHistoryCreate:
        if self.status == "scheduled" and self.scheduled_for is None:
            raise ValueError("scheduled messages require scheduled_for")
        if self.status != "sent" and self.sent_at is not None:
            raise ValueError("sent_at is only set on sent messages")
        return self


class MessageHistory(MessageHistoryCreate):
    id: int
    created_at: datetime = Field(default_factory=_now_utc)


class ChannelInstance(BaseModel):
    id: int
    owner_id: str
    name: str
    instance_name: str
    access_token: str | None = None
    status: ChannelStatus = "created"
    is_connected: bool = False
    is_default: bool = False


class ChannelSettings(BaseModel):
    owner_id: str
    api_url: str
    api_key: str


class CalendarEvent(BaseModel):
    id: int
    owner_id: str
    billing_id: int
    title: str
    description: str | None = None
    start_at: datetime
    is_all_day: bool = False


class JobStatusResponse(BaseModel):
    running: bool
    jobs: dict[str, bool]


class JobRunResponse(BaseModel):
    name: str
    triggered_at: datetime


class ChannelSyncResponse(BaseModel):
    instance_id: int
    instance_name: str
    status: ChannelStatus
    is_connected: bool


class QrCodeResponse(BaseModel):
    instance_id: int
    base64: str | None = None
    pairing_code: str | None = None
    code: str | None = None
