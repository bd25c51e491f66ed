from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_bounded_int(value: str | None, default: int, *, minimum: int, maximum: int | None = None) -> int:
    parsed = _as_int(value, default)
    if parsed < minimum or (maximum is not None and parsed > maximum):
        return default
    return parsed


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Billing Notification Engine"
    api_prefix: str = "/api/v1"
    record_store_backend: str = "inmemory"
    database_url: str = ""
    scheduler_enabled: bool = False
    scheduler_timezone: str = "America/Sao_Paulo"
    scheduler_skip_if_running: bool = True
    scheduled_messages_interval_seconds: int = 60
    channel_sync_interval_seconds: int = 30
    overdue_notification_hour: int = 9
    recurring_billing_hour: int = 1
    recurring_skip_existing_occurrence: bool = True
    whatsapp_sender_type: str = "stub"
    evolution_api_url: str = ""
    evolution_api_key: str = ""
    evolution_timeout_seconds: int = 30
    email_sender_type: str = "stub"
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_secure: bool = False
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""
    smtp_timeout_seconds: int = 30
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_user.strip() and self.smtp_pass.strip())

    @property
    def smtp_sender_address(self) -> str:
        return self.smtp_from.strip() or self.smtp_user.strip()


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("ENGINE_APP_NAME", "Billing Notification Engine"),
        api_prefix=os.getenv("ENGINE_API_PREFIX", "/api/v1"),
        record_store_backend=_normalize_mode(
            os.getenv("RECORD_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        scheduler_enabled=_as_bool(os.getenv("SCHEDULER_ENABLED"), False),
        scheduler_timezone=os.getenv("SCHEDULER_TIMEZONE", "America/Sao_Paulo"),
        scheduler_skip_if_running=_as_bool(os.getenv("SCHEDULER_SKIP_IF_RUNNING"), True),
        scheduled_messages_interval_seconds=_as_bounded_int(os.getenv("SCHEDULED_MESSAGES_INTERVAL_SECONDS"), 60, minimum=1),
        channel_sync_interval_seconds=_as_bounded_int(os.getenv("CHANNEL_SYNC_INTERVAL_SECONDS"), 30, minimum=1),
        overdue_notification_hour=_as_bounded_int(os.getenv("OVERDUE_NOTIFICATION_HOUR"), 9, minimum=0, maximum=23),
        recurring_billing_hour=_as_bounded_int(os.getenv("RECURRING_BILLING_HOUR"), 1, minimum=0, maximum=23),
        recurring_skip_existing_occurrence=_as_bool(os.getenv("RECURRING_SKIP_EXISTING_OCCURRENCE"), True),
        whatsapp_sender_type=_normalize_mode(
            os.getenv("WHATSAPP_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "evolution"},
        ),
        evolution_api_url=os.getenv("EVOLUTION_API_URL", ""),
        evolution_api_key=os.getenv("EVOLUTION_API_KEY", ""),
        evolution_timeout_seconds=_as_int(os.getenv("EVOLUTION_TIMEOUT_SECONDS"), 30),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587),
        smtp_secure=_as_bool(os.getenv("SMTP_SECURE"), False),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_pass=os.getenv("SMTP_PASS", ""),
        smtp_from=os.getenv("SMTP_FROM", ""),
        smtp_timeout_seconds=_as_int(os.getenv("SMTP_TIMEOUT_SECONDS"), 30),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.email_sender_type == "smtp" and not settings.smtp_configured:
        issues.append("SMTP_USER and SMTP_PASS are required when EMAIL_SENDER_TYPE=smtp")
    if settings.evolution_api_url.strip() and not settings.evolution_api_key.strip():
        issues.append("EVOLUTION_API_KEY is required when EVOLUTION_API_URL is set")
    if settings.record_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when RECORD_STORE_BACKEND=postgres")
    if settings.scheduled_messages_interval_seconds <= 0:
        issues.append("SCHEDULED_MESSAGES_INTERVAL_SECONDS must be positive")
    if settings.channel_sync_interval_seconds <= 0:
        issues.append("CHANNEL_SYNC_INTERVAL_SECONDS must be positive")
    for name, hour in (
        ("OVERDUE_NOTIFICATION_HOUR", settings.overdue_notification_hour),
        ("RECURRING_BILLING_HOUR", settings.recurring_billing_hour),
    ):
        if not 0 <= hour <= 23:
            issues.append(f"{name} must be between 0 and 23")
    return tuple(issues)
