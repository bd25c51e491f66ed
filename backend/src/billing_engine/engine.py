from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

from .config import Settings
from .dispatcher import NotificationDispatcher
from .drainer import ScheduledMessageDrainer
from .lifecycle import scan_overdue
from .notifier import (
    EmailSender,
    EvolutionWhatsAppSender,
    ProviderResolver,
    SmtpEmailSender,
    StubEmailSender,
    StubWhatsAppSender,
    WhatsAppSender,
)
from .reconciler import ChannelStatusReconciler
from .recurring import RecurringBillingGenerator
from .scheduler import DailyTrigger, HourlyTrigger, IntervalTrigger, JobOrchestrator
from .store import RecordStore
from .store_backends import create_record_store

logger = logging.getLogger(__name__)

JOB_BILLING_REMINDERS = "billing-reminders"
JOB_OVERDUE_NOTIFICATIONS = "overdue-notifications"
JOB_RECURRING_BILLINGS = "recurring-billings"
JOB_UPDATE_OVERDUE_STATUS = "update-overdue-status"
JOB_SCHEDULED_MESSAGES = "scheduled-messages"
JOB_CHANNEL_STATUS_SYNC = "channel-status-sync"

DEFAULT_JOB_NAMES = (
    JOB_BILLING_REMINDERS,
    JOB_OVERDUE_NOTIFICATIONS,
    JOB_RECURRING_BILLINGS,
    JOB_UPDATE_OVERDUE_STATUS,
    JOB_SCHEDULED_MESSAGES,
    JOB_CHANNEL_STATUS_SYNC,
)


@dataclass
class Engine:
    settings: Settings
    store: RecordStore
    email_sender: EmailSender
    whatsapp_sender: WhatsAppSender
    resolver: ProviderResolver
    generator: RecurringBillingGenerator
    dispatcher: NotificationDispatcher
    drainer: ScheduledMessageDrainer
    reconciler: ChannelStatusReconciler
    orchestrator: JobOrchestrator

    @property
    def timezone(self) -> ZoneInfo:
        return self.orchestrator.timezone

    def now(self) -> datetime:
        return datetime.now(self.timezone)

    def today(self) -> date:
        return self.now().date()


def build_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "smtp":
        return SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            secure=settings.smtp_secure,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            sender_address=settings.smtp_sender_address,
            timeout_seconds=settings.smtp_timeout_seconds,
        )
    return StubEmailSender()


def build_whatsapp_sender(settings: Settings, resolver: ProviderResolver) -> WhatsAppSender:
    if settings.whatsapp_sender_type == "evolution":
        return EvolutionWhatsAppSender(resolver=resolver)
    return StubWhatsAppSender()


def build_engine(settings: Settings, store: RecordStore | None = None) -> Engine:
    if store is None:
        store = create_record_store(
            backend=settings.record_store_backend,
            database_url=settings.database_url,
        )
    resolver = ProviderResolver(
        store=store,
        default_api_url=settings.evolution_api_url,
        default_api_key=settings.evolution_api_key,
        timeout_seconds=settings.evolution_timeout_seconds,
    )
    email_sender = build_email_sender(settings)
    whatsapp_sender = build_whatsapp_sender(settings, resolver)
    engine = Engine(
        settings=settings,
        store=store,
        email_sender=email_sender,
        whatsapp_sender=whatsapp_sender,
        resolver=resolver,
        generator=RecurringBillingGenerator(
            store=store,
            timezone_name=settings.scheduler_timezone,
            skip_existing_occurrence=settings.recurring_skip_existing_occurrence,
        ),
        dispatcher=NotificationDispatcher(
            store=store,
            email_sender=email_sender,
            whatsapp_sender=whatsapp_sender,
            timezone_name=settings.scheduler_timezone,
        ),
        drainer=ScheduledMessageDrainer(store=store, whatsapp_sender=whatsapp_sender),
        reconciler=ChannelStatusReconciler(store=store, resolver=resolver),
        orchestrator=JobOrchestrator(
            timezone_name=settings.scheduler_timezone,
            skip_if_running=settings.scheduler_skip_if_running,
        ),
    )
    logger.info(
        "engine built: store=%s email=%s whatsapp=%s",
        settings.record_store_backend,
        settings.email_sender_type,
        settings.whatsapp_sender_type,
    )
    return engine


def register_default_jobs(engine: Engine) -> None:
    settings = engine.settings
    orchestrator = engine.orchestrator

    def billing_reminders() -> None:
        engine.dispatcher.run_reminder_pass(engine.today())

    def overdue_notifications() -> None:
        engine.dispatcher.run_overdue_pass(engine.today())

    def recurring_billings() -> None:
        engine.generator.run(engine.today())

    def update_overdue_status() -> None:
        overdue = scan_overdue(engine.store, engine.today())
        logger.info("%d billings are overdue", len(overdue))

    def scheduled_messages() -> None:
        engine.drainer.drain(engine.now())

    def channel_status_sync() -> None:
        engine.reconciler.sync_all()

    orchestrator.register(JOB_BILLING_REMINDERS, HourlyTrigger(minute=0), billing_reminders)
    orchestrator.register(
        JOB_OVERDUE_NOTIFICATIONS,
        DailyTrigger(hour=settings.overdue_notification_hour),
        overdue_notifications,
    )
    orchestrator.register(
        JOB_RECURRING_BILLINGS,
        DailyTrigger(hour=settings.recurring_billing_hour),
        recurring_billings,
    )
    orchestrator.register(JOB_UPDATE_OVERDUE_STATUS, HourlyTrigger(minute=0), update_overdue_status)
    orchestrator.register(
        JOB_SCHEDULED_MESSAGES,
        IntervalTrigger(seconds=settings.scheduled_messages_interval_seconds),
        scheduled_messages,
    )
    orchestrator.register(
        JOB_CHANNEL_STATUS_SYNC,
        IntervalTrigger(seconds=settings.channel_sync_interval_seconds),
        channel_status_sync,
    )
