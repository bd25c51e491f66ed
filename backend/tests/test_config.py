from __future__ import annotations

import os

from billing_engine.config import Settings, get_settings, runtime_secret_issues
from billing_engine.engine import DEFAULT_JOB_NAMES, build_engine, register_default_jobs
from billing_engine.store import InMemoryRecordStore


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_get_settings_defaults() -> None:
    previous = _set_env(
        {
            "SCHEDULER_TIMEZONE": None,
            "SCHEDULER_ENABLED": None,
            "SCHEDULED_MESSAGES_INTERVAL_SECONDS": None,
            "CHANNEL_SYNC_INTERVAL_SECONDS": None,
            "RECORD_STORE_BACKEND": None,
            "EMAIL_SENDER_TYPE": None,
            "WHATSAPP_SENDER_TYPE": None,
        }
    )
    try:
        settings = get_settings()
        assert settings.scheduler_timezone == "America/Sao_Paulo"
        assert settings.scheduler_enabled is False
        assert settings.scheduled_messages_interval_seconds == 60
        assert settings.channel_sync_interval_seconds == 30
        assert settings.record_store_backend == "inmemory"
        assert settings.email_sender_type == "stub"
        assert settings.whatsapp_sender_type == "stub"
    finally:
        _restore_env(previous)


def test_get_settings_reads_and_normalizes_env() -> None:
    previous = _set_env(
        {
            "SCHEDULER_ENABLED": "yes",
            "SCHEDULER_SKIP_IF_RUNNING": "off",
            "RECURRING_BILLING_HOUR": "3",
            "SMTP_PORT": "not-a-number",
            "EMAIL_SENDER_TYPE": "SMTP",
            "WHATSAPP_SENDER_TYPE": "carrier-pigeon",
            "LOG_LEVEL": "debug",
        }
    )
    try:
        settings = get_settings()
        assert settings.scheduler_enabled is True
        assert settings.scheduler_skip_if_running is False
        assert settings.recurring_billing_hour == 3
        assert settings.smtp_port == 587
        assert settings.email_sender_type == "smtp"
        assert settings.whatsapp_sender_type == "stub"
        assert settings.log_level == "DEBUG"
    finally:
        _restore_env(previous)


def test_smtp_sender_address_falls_back_to_user() -> None:
    assert Settings(smtp_user="billing@example.com").smtp_sender_address == "billing@example.com"
    assert Settings(smtp_user="a@example.com", smtp_from="Cobrança <b@example.com>").smtp_sender_address == (
        "Cobrança <b@example.com>"
    )


def test_default_settings_have_no_issues() -> None:
    assert runtime_secret_issues(Settings()) == ()


def test_runtime_secret_issues_reports_misconfiguration() -> None:
    issues = runtime_secret_issues(
        Settings(
            email_sender_type="smtp",
            evolution_api_url="https://evo.example.com",
            record_store_backend="postgres",
            channel_sync_interval_seconds=0,
            overdue_notification_hour=24,
        )
    )
    assert any("SMTP_USER" in issue for issue in issues)
    assert any("EVOLUTION_API_KEY" in issue for issue in issues)
    assert any("DATABASE_URL" in issue for issue in issues)
    assert any("CHANNEL_SYNC_INTERVAL_SECONDS" in issue for issue in issues)
    assert any("OVERDUE_NOTIFICATION_HOUR" in issue for issue in issues)


def test_out_of_range_schedule_env_falls_back_to_defaults() -> None:
    previous = _set_env(
        {
            "OVERDUE_NOTIFICATION_HOUR": "24",
            "RECURRING_BILLING_HOUR": "-1",
            "SCHEDULED_MESSAGES_INTERVAL_SECONDS": "-5",
            "CHANNEL_SYNC_INTERVAL_SECONDS": "0",
        }
    )
    try:
        settings = get_settings()
    finally:
        _restore_env(previous)

    assert settings.overdue_notification_hour == 9
    assert settings.recurring_billing_hour == 1
    assert settings.scheduled_messages_interval_seconds == 60
    assert settings.channel_sync_interval_seconds == 30
    issues = runtime_secret_issues(settings)
    assert not any("HOUR" in issue or "INTERVAL" in issue for issue in issues)

    engine = build_engine(settings, store=InMemoryRecordStore())
    register_default_jobs(engine)
    assert sorted(engine.orchestrator.job_names()) == sorted(DEFAULT_JOB_NAMES)


def test_in_range_schedule_env_is_kept() -> None:
    previous = _set_env({"OVERDUE_NOTIFICATION_HOUR": "0", "CHANNEL_SYNC_INTERVAL_SECONDS": "1"})
    try:
        settings = get_settings()
    finally:
        _restore_env(previous)

    assert settings.overdue_notification_hour == 0
    assert settings.channel_sync_interval_seconds == 1
