from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

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
from .store import (
    BillingNotFoundError,
    ChannelInstanceNotFoundError,
    InMemoryRecordStore,
    RecordNotFoundError,
    RecordStore,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


class RecordStoreBase(DeclarativeBase):
    pass


class _CustomerRow(RecordStoreBase):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_key: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _BillingRow(RecordStoreBase):
    __tablename__ = "billings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    customer_id: Mapped[int] = mapped_column(Integer, ForeignKey("customers.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    recurrence_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    recurrence_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    recurrence_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    parent_billing_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("billings.id"), nullable=True, index=True
    )
    payment_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageTemplateRow(RecordStoreBase):
    __tablename__ = "message_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    trigger_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _MessageHistoryRow(RecordStoreBase):
    __tablename__ = "message_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    customer_id: Mapped[int] = mapped_column(Integer, ForeignKey("customers.id"), nullable=False)
    billing_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("billings.id"), nullable=True, index=True)
    template_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("message_templates.id"), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    recipient_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CalendarEventRow(RecordStoreBase):
    __tablename__ = "calendar_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    billing_id: Mapped[int] = mapped_column(Integer, ForeignKey("billings.id"), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class _ChannelInstanceRow(RecordStoreBase):
    __tablename__ = "channel_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    instance_name: Mapped[str] = mapped_column(String(256), nullable=False)
    access_token: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="created")
    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class _ChannelSettingsRow(RecordStoreBase):
    __tablename__ = "channel_settings"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    api_url: Mapped[str] = mapped_column(String(512), nullable=False)
    api_key: Mapped[str] = mapped_column(String(256), nullable=False)


def _to_customer(row: _CustomerRow) -> Customer:
    return Customer(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        payment_key=row.payment_key,
    )


def _to_billing(row: _BillingRow) -> Billing:
    return Billing(
        id=row.id,
        owner_id=row.owner_id,
        customer_id=row.customer_id,
        amount=Decimal(row.amount),
        description=row.description,
        due_date=row.due_date,
        status=row.status,  # type: ignore[arg-type]
        recurrence_kind=row.recurrence_kind,  # type: ignore[arg-type]
        recurrence_interval=row.recurrence_interval,
        recurrence_end_date=row.recurrence_end_date,
        parent_billing_id=row.parent_billing_id,
        payment_key=row.payment_key,
        paid_at=_optional_utc(row.paid_at),
        created_at=_coerce_utc(row.created_at),
    )


def _to_template(row: _MessageTemplateRow) -> MessageTemplate:
    return MessageTemplate(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        content=row.content,
        trigger_kind=row.trigger_kind,  # type: ignore[arg-type]
        trigger_days=row.trigger_days,
        is_active=row.is_active,
    )


def _to_message(row: _MessageHistoryRow) -> MessageHistory:
    return MessageHistory(
        id=row.id,
        owner_id=row.owner_id,
        customer_id=row.customer_id,
        billing_id=row.billing_id,
        template_id=row.template_id,
        content=row.content,
        channel=row.channel,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        sent_at=_optional_utc(row.sent_at),
        scheduled_for=_optional_utc(row.scheduled_for),
        recipient_phone=row.recipient_phone,
        created_at=_coerce_utc(row.created_at),
    )


def _to_event(row: _CalendarEventRow) -> CalendarEvent:
    return CalendarEvent(
        id=row.id,
        owner_id=row.owner_id,
        billing_id=row.billing_id,
        title=row.title,
        description=row.description,
        start_at=_coerce_utc(row.start_at),
        is_all_day=row.is_all_day,
    )


def _to_instance(row: _ChannelInstanceRow) -> ChannelInstance:
    return ChannelInstance(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        instance_name=row.instance_name,
        access_token=row.access_token,
        status=row.status,  # type: ignore[arg-type]
        is_connected=row.is_connected,
        is_default=row.is_default,
    )


class SqlAlchemyRecordStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RECORD_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RecordStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageHistoryRow))
                session.execute(delete(_CalendarEventRow))
                session.execute(update(_BillingRow).values(parent_billing_id=None))
                session.execute(delete(_BillingRow))
                session.execute(delete(_MessageTemplateRow))
                session.execute(delete(_CustomerRow))
                session.execute(delete(_ChannelInstanceRow))
                session.execute(delete(_ChannelSettingsRow))

    def list_owner_ids(self) -> list[str]:
        with self._session() as session:
            owners: set[str] = set()
            for model in (_BillingRow, _MessageTemplateRow, _ChannelInstanceRow):
                owners.update(session.execute(select(model.owner_id).distinct()).scalars())
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
        with self._session() as session:
            with session.begin():
                row = _CustomerRow(owner_id=owner_id, name=name, email=email, phone=phone, payment_key=payment_key)
                session.add(row)
                session.flush()
                return _to_customer(row)

    def get_customer(self, customer_id: int, owner_id: str) -> Customer | None:
        with self._session() as session:
            row = session.get(_CustomerRow, customer_id)
            if row is None or row.owner_id != owner_id:
                return None
            return _to_customer(row)

    def create_billing(self, payload: BillingCreate) -> Billing:
        with self._session() as session:
            with session.begin():
                row = _BillingRow(**payload.model_dump(), created_at=_now_utc())
                session.add(row)
                session.flush()
                return _to_billing(row)

    def get_billing(self, billing_id: int, owner_id: str) -> Billing | None:
        with self._session() as session:
            row = session.get(_BillingRow, billing_id)
            if row is None or row.owner_id != owner_id:
                return None
            return _to_billing(row)

    def save_billing(self, billing: Billing) -> Billing:
        with self._session() as session:
            with session.begin():
                row = session.get(_BillingRow, billing.id)
                if row is None or row.owner_id != billing.owner_id:
                    raise BillingNotFoundError(billing.id)
                for key, value in billing.model_dump(exclude={"id", "owner_id", "created_at"}).items():
                    setattr(row, key, value)
                session.flush()
                return _to_billing(row)

    def list_billings(
        self,
        owner_id: str,
        *,
        status: str | None = None,
        due_date: date | None = None,
    ) -> list[Billing]:
        query = select(_BillingRow).where(_BillingRow.owner_id == owner_id)
        if status is not None:
            query = query.where(_BillingRow.status == status)
        if due_date is not None:
            query = query.where(_BillingRow.due_date == due_date)
        with self._session() as session:
            rows = session.execute(query.order_by(_BillingRow.id.asc())).scalars()
            return [_to_billing(row) for row in rows]

    def find_occurrence(self, parent_billing_id: int, due_date: date) -> Billing | None:
        with self._session() as session:
            row = session.execute(
                select(_BillingRow)
                .where(_BillingRow.parent_billing_id == parent_billing_id)
                .where(_BillingRow.due_date == due_date)
                .limit(1)
            ).scalar_one_or_none()
            return _to_billing(row) if row is not None else None

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
        with self._session() as session:
            with session.begin():
                row = _CalendarEventRow(
                    owner_id=owner_id,
                    billing_id=billing_id,
                    title=title,
                    description=description,
                    start_at=_coerce_utc(start_at),
                    is_all_day=is_all_day,
                )
                session.add(row)
                session.flush()
                return _to_event(row)

    def list_calendar_events(self, owner_id: str) -> list[CalendarEvent]:
        with self._session() as session:
            rows = session.execute(
                select(_CalendarEventRow)
                .where(_CalendarEventRow.owner_id == owner_id)
                .order_by(_CalendarEventRow.id.asc())
            ).scalars()
            return [_to_event(row) for row in rows]

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
        with self._session() as session:
            with session.begin():
                row = _MessageTemplateRow(
                    owner_id=owner_id,
                    name=name,
                    content=content,
                    trigger_kind=trigger_kind,
                    trigger_days=trigger_days,
                    is_active=is_active,
                )
                session.add(row)
                session.flush()
                return _to_template(row)

    def list_message_templates(self, owner_id: str) -> list[MessageTemplate]:
        with self._session() as session:
            rows = session.execute(
                select(_MessageTemplateRow)
                .where(_MessageTemplateRow.owner_id == owner_id)
                .order_by(_MessageTemplateRow.id.asc())
            ).scalars()
            return [_to_template(row) for row in rows]

    def create_message_history(self, payload: MessageHistoryCreate) -> MessageHistory:
        with self._session() as session:
            with session.begin():
                values = payload.model_dump()
                values["sent_at"] = _optional_utc(payload.sent_at)
                values["scheduled_for"] = _optional_utc(payload.scheduled_for)
                row = _MessageHistoryRow(**values, created_at=_now_utc())
                session.add(row)
                session.flush()
                return _to_message(row)

    def list_message_history(self, owner_id: str) -> list[MessageHistory]:
        with self._session() as session:
            rows = session.execute(
                select(_MessageHistoryRow)
                .where(_MessageHistoryRow.owner_id == owner_id)
                .order_by(_MessageHistoryRow.id.asc())
            ).scalars()
            return [_to_message(row) for row in rows]

    def has_message_since(self, billing_id: int, template_id: int, since: datetime) -> bool:
        with self._session() as session:
            row = session.execute(
                select(_MessageHistoryRow.id)
                .where(_MessageHistoryRow.billing_id == billing_id)
                .where(_MessageHistoryRow.template_id == template_id)
                .where(_MessageHistoryRow.created_at >= _coerce_utc(since))
                .limit(1)
            ).scalar_one_or_none()
            return row is not None

    def list_due_scheduled_messages(self, now: datetime) -> list[MessageHistory]:
        with self._session() as session:
            rows = session.execute(
                select(_MessageHistoryRow)
                .where(_MessageHistoryRow.status == "scheduled")
                .where(_MessageHistoryRow.scheduled_for <= _coerce_utc(now))
                .order_by(_MessageHistoryRow.id.asc())
            ).scalars()
            return [_to_message(row) for row in rows]

    def complete_scheduled_message(
        self,
        message_id: int,
        *,
        status: str,
        sent_at: datetime | None,
    ) -> bool:
        if status not in {"sent", "failed"}:
            raise ValueError(f"scheduled messages can only become sent or failed, not {status}")
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MessageHistoryRow)
                    .where(_MessageHistoryRow.id == message_id)
                    .where(_MessageHistoryRow.status == "scheduled")
                    .values(status=status, sent_at=_optional_utc(sent_at))
                )
                if result.rowcount == 1:
                    return True
                if session.get(_MessageHistoryRow, message_id) is None:
                    raise RecordNotFoundError(message_id)
                return False

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
        with self._session() as session:
            with session.begin():
                if is_default:
                    session.execute(
                        update(_ChannelInstanceRow)
                        .where(_ChannelInstanceRow.owner_id == owner_id)
                        .values(is_default=False)
                    )
                row = _ChannelInstanceRow(
                    owner_id=owner_id,
                    name=name,
                    instance_name=instance_name,
                    access_token=access_token,
                    status=status,
                    is_connected=is_connected,
                    is_default=is_default,
                )
                session.add(row)
                session.flush()
                return _to_instance(row)

    def list_channel_instances(self, owner_id: str | None = None) -> list[ChannelInstance]:
        query = select(_ChannelInstanceRow)
        if owner_id is not None:
            query = query.where(_ChannelInstanceRow.owner_id == owner_id)
        with self._session() as session:
            rows = session.execute(query.order_by(_ChannelInstanceRow.id.asc())).scalars()
            return [_to_instance(row) for row in rows]

    def get_channel_instance(self, instance_id: int, owner_id: str) -> ChannelInstance | None:
        with self._session() as session:
            row = session.get(_ChannelInstanceRow, instance_id)
            if row is None or row.owner_id != owner_id:
                return None
            return _to_instance(row)

    def update_channel_instance_status(
        self,
        instance_id: int,
        *,
        status: ChannelStatus,
        is_connected: bool,
    ) -> ChannelInstance:
        with self._session() as session:
            with session.begin():
                row = session.get(_ChannelInstanceRow, instance_id)
                if row is None:
                    raise ChannelInstanceNotFoundError(instance_id)
                row.status = status
                row.is_connected = is_connected
                session.flush()
                return _to_instance(row)

    def save_channel_settings(self, settings: ChannelSettings) -> ChannelSettings:
        with self._session() as session:
            with session.begin():
                row = session.get(_ChannelSettingsRow, settings.owner_id)
                if row is None:
                    session.add(
                        _ChannelSettingsRow(
                            owner_id=settings.owner_id,
                            api_url=settings.api_url,
                            api_key=settings.api_key,
                        )
                    )
                else:
                    row.api_url = settings.api_url
                    row.api_key = settings.api_key
        return settings.model_copy()

    def get_channel_settings(self, owner_id: str) -> ChannelSettings | None:
        with self._session() as session:
            row = session.get(_ChannelSettingsRow, owner_id)
            if row is None:
                return None
            return ChannelSettings(owner_id=row.owner_id, api_url=row.api_url, api_key=row.api_key)


def create_record_store(*, backend: str, database_url: str) -> RecordStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyRecordStore(database_url)
    if normalized == "inmemory":
        return InMemoryRecordStore()
    raise RuntimeError(f"unsupported RECORD_STORE_BACKEND: {backend}")
