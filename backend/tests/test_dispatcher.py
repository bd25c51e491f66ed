from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

from billing_engine.dispatcher import NotificationDispatcher
from billing_engine.models import BillingCreate
from billing_engine.notifier import EvolutionWhatsAppSender, ProviderResolver, StubEmailSender, StubWhatsAppSender
from billing_engine.store import InMemoryRecordStore

OWNER = "owner-1"


def _make_store(
    *,
    email: str | None = "cliente@example.com",
    phone: str | None = "11987654321",
    due_date: date = date(2025, 6, 10),
    trigger_kind: str = "before_due",
    trigger_days: int = 5,
) -> InMemoryRecordStore:
    store = InMemoryRecordStore()
    customer = store.add_customer(OWNER, name="Carlos Lima", email=email, phone=phone)
    store.create_billing(
        BillingCreate(
            owner_id=OWNER,
            customer_id=customer.id,
            amount=Decimal("150"),
            description="Mensalidade junho",
            due_date=due_date,
        )
    )
    store.add_message_template(
        OWNER,
        name="Lembrete",
        content="Olá {nome}, {descricao} de {valor} vence em {data}.",
        trigger_kind=trigger_kind,  # type: ignore[arg-type]
        trigger_days=trigger_days,
    )
    return store


def _make_dispatcher(
    store: InMemoryRecordStore,
    *,
    email_sender: StubEmailSender | None = None,
    whatsapp_sender: StubWhatsAppSender | None = None,
) -> tuple[NotificationDispatcher, StubEmailSender, StubWhatsAppSender]:
    email = email_sender or StubEmailSender()
    whatsapp = whatsapp_sender or StubWhatsAppSender()
    dispatcher = NotificationDispatcher(store=store, email_sender=email, whatsapp_sender=whatsapp)
    return dispatcher, email, whatsapp


def test_reminder_fires_only_on_exact_trigger_day() -> None:
    for run_day, expected_sent in (
        (date(2025, 6, 4), 0),
        (date(2025, 6, 5), 1),
        (date(2025, 6, 6), 0),
    ):
        store = _make_store()
        dispatcher, email, _ = _make_dispatcher(store)
        summary = dispatcher.run_reminder_pass(run_day)
        assert summary.sent == expected_sent, run_day
        assert len(email.sent) == expected_sent


def test_reminder_renders_content_and_records_email_history() -> None:
    store = _make_store()
    dispatcher, email, whatsapp = _make_dispatcher(store)

    dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert email.sent == [
        ("cliente@example.com", "Olá Carlos Lima, Mensalidade junho de R$ 150,00 vence em 10/06/2025.")
    ]
    assert whatsapp.sent == []
    history = store.list_message_history(OWNER)
    assert len(history) == 1
    assert history[0].channel == "email"
    assert history[0].status == "sent"
    assert history[0].sent_at is not None
    assert history[0].template_id is not None


def test_customer_without_email_falls_back_to_whatsapp() -> None:
    store = _make_store(email=None)
    dispatcher, email, whatsapp = _make_dispatcher(store)

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.sent == 1
    assert email.sent == []
    assert len(whatsapp.sent) == 1
    assert whatsapp.sent[0][:2] == (OWNER, "11987654321")
    history = store.list_message_history(OWNER)
    assert history[0].channel == "whatsapp"
    assert history[0].status == "sent"
    assert history[0].recipient_phone == "11987654321"


def test_failed_email_falls_back_to_whatsapp() -> None:
    store = _make_store()
    dispatcher, email, whatsapp = _make_dispatcher(
        store,
        email_sender=StubEmailSender(failing_targets={"cliente@example.com"}),
    )

    dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert email.sent == []
    assert len(whatsapp.sent) == 1
    assert store.list_message_history(OWNER)[0].channel == "whatsapp"


def test_successful_email_never_tries_whatsapp() -> None:
    store = _make_store()
    dispatcher, _, whatsapp = _make_dispatcher(store)

    dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert whatsapp.sent == []


def test_both_channels_failing_records_failed_whatsapp_row() -> None:
    store = _make_store()
    dispatcher, _, _ = _make_dispatcher(
        store,
        email_sender=StubEmailSender(failing_targets={"cliente@example.com"}),
        whatsapp_sender=StubWhatsAppSender(failing_targets={"11987654321"}),
    )

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.failed == 1
    history = store.list_message_history(OWNER)
    assert history[0].channel == "whatsapp"
    assert history[0].status == "failed"
    assert history[0].sent_at is None


def test_customer_without_any_address_gets_failed_email_row() -> None:
    store = _make_store(email=None, phone=None)
    dispatcher, _, _ = _make_dispatcher(store)

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.failed == 1
    history = store.list_message_history(OWNER)
    assert history[0].channel == "email"
    assert history[0].status == "failed"


def test_same_day_rerun_does_not_resend() -> None:
    store = _make_store()
    dispatcher, email, _ = _make_dispatcher(store)

    dispatcher.run_reminder_pass(date(2025, 6, 5))
    second = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert second.skipped == 1
    assert len(email.sent) == 1
    assert len(store.list_message_history(OWNER)) == 1


def test_overdue_pass_uses_one_day_when_offset_is_zero() -> None:
    store = _make_store(trigger_kind="after_due", trigger_days=0)
    dispatcher, email, _ = _make_dispatcher(store)

    assert dispatcher.run_overdue_pass(date(2025, 6, 10)).sent == 0
    assert dispatcher.run_overdue_pass(date(2025, 6, 11)).sent == 1
    assert len(email.sent) == 1


def test_overdue_pass_honours_configured_offset() -> None:
    store = _make_store(trigger_kind="after_due", trigger_days=3)
    dispatcher, _, _ = _make_dispatcher(store)

    assert dispatcher.run_overdue_pass(date(2025, 6, 13)).sent == 1


def test_reminder_pass_ignores_after_due_and_inactive_templates() -> None:
    store = _make_store(trigger_kind="after_due", trigger_days=5)
    store.add_message_template(
        OWNER,
        name="Inativo",
        content="{nome}",
        trigger_kind="before_due",
        trigger_days=5,
        is_active=False,
    )
    dispatcher, email, _ = _make_dispatcher(store)

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.evaluated == 0
    assert email.sent == []


def test_paid_billings_are_not_notified() -> None:
    store = _make_store()
    billing = store.list_billings(OWNER)[0]
    store.save_billing(billing.model_copy(update={"status": "paid"}))
    dispatcher, email, _ = _make_dispatcher(store)

    assert dispatcher.run_reminder_pass(date(2025, 6, 5)).evaluated == 0
    assert email.sent == []


def test_missing_customer_is_skipped_without_history() -> None:
    store = _make_store()
    store.create_billing(
        BillingCreate(
            owner_id=OWNER,
            customer_id=999,
            amount=Decimal("10"),
            description="Órfã",
            due_date=date(2025, 6, 10),
        )
    )
    dispatcher, email, _ = _make_dispatcher(store)

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.evaluated == 2
    assert summary.sent == 1
    assert summary.skipped == 1
    assert len(store.list_message_history(OWNER)) == 1
    assert len(email.sent) == 1


def test_exception_on_one_pair_does_not_stop_the_pass() -> None:
    class ExplodingEmailSender(StubEmailSender):
        def send_email(self, *, to: str, customer_name: str, content: str):  # type: ignore[override]
            if to == "boom@example.com":
                raise RuntimeError("smtp exploded")
            return super().send_email(to=to, customer_name=customer_name, content=content)

    store = _make_store()
    other = store.add_customer(OWNER, name="Bia", email="boom@example.com")
    store.create_billing(
        BillingCreate(
            owner_id=OWNER,
            customer_id=other.id,
            amount=Decimal("20"),
            description="Outra",
            due_date=date(2025, 6, 10),
        )
    )
    email = ExplodingEmailSender()
    dispatcher, _, _ = _make_dispatcher(store, email_sender=email)

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.errors == 1
    assert summary.sent == 1
    assert email.sent[0][0] == "cliente@example.com"


@patch("billing_engine.evolution.urllib.request.urlopen")
def test_connection_reset_on_whatsapp_send_records_failed_row(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = ConnectionResetError(104, "Connection reset by peer")
    store = _make_store(email=None)
    store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1", status="connected", is_connected=True)
    resolver = ProviderResolver(store=store, default_api_url="https://evo.test", default_api_key="key-1")
    dispatcher = NotificationDispatcher(
        store=store,
        email_sender=StubEmailSender(),
        whatsapp_sender=EvolutionWhatsAppSender(resolver=resolver),
    )

    summary = dispatcher.run_reminder_pass(date(2025, 6, 5))

    assert summary.errors == 0
    assert summary.failed == 1
    history = store.list_message_history(OWNER)
    assert [(row.channel, row.status) for row in history] == [("whatsapp", "failed")]
