from __future__ import annotations

import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Literal, Protocol

from .evolution import EvolutionApiClient, EvolutionApiError, normalize_phone, whatsapp_address
from .models import ChannelInstance, MessageChannel
from .store import RecordStore

logger = logging.getLogger(__name__)

SendStatus = Literal["sent", "failed"]

EMAIL_SUBJECT = "Notificação de Cobrança"


class ChannelSettingsMissingError(RuntimeError):
    """Raised when an owner has no provider credentials and no process default exists."""


@dataclass(frozen=True)
class ChannelSendResult:
    channel: MessageChannel
    status: SendStatus
    attempted_at: datetime
    raw_response: Any = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _failed(channel: MessageChannel, error_code: str, error_message: str) -> ChannelSendResult:
    return ChannelSendResult(
        channel=channel,
        status="failed",
        attempted_at=_now_utc(),
        error_code=error_code,
        error_message=error_message,
    )


def response_has_error(response: Any) -> bool:
    if response is None:
        return True
    if isinstance(response, dict):
        return bool(response.get("error"))
    return False


class EmailSender(Protocol):
    def send_email(self, *, to: str, customer_name: str, content: str) -> ChannelSendResult: ...


class WhatsAppSender(Protocol):
    def send_text(self, *, owner_id: str, phone: str, content: str) -> ChannelSendResult: ...


class StubEmailSender:
    def __init__(self, *, enabled: bool = True, failing_targets: set[str] | None = None) -> None:
        self._enabled = enabled
        self._failing_targets = failing_targets or set()
        self.sent: list[tuple[str, str]] = []

    def send_email(self, *, to: str, customer_name: str, content: str) -> ChannelSendResult:
        if not self._enabled:
            return _failed("email", "email_disabled", "Stub email delivery is disabled")
        if to in self._failing_targets:
            return _failed("email", "stub_delivery_failed", "Stub sender forced failure for recipient")
        self.sent.append((to, content))
        return ChannelSendResult(channel="email", status="sent", attempted_at=_now_utc())


class StubWhatsAppSender:
    def __init__(self, *, enabled: bool = True, failing_targets: set[str] | None = None) -> None:
        self._enabled = enabled
        self._failing_targets = failing_targets or set()
        self.sent: list[tuple[str, str, str]] = []

    def send_text(self, *, owner_id: str, phone: str, content: str) -> ChannelSendResult:
        if not self._enabled:
            return _failed("whatsapp", "whatsapp_disabled", "Stub WhatsApp delivery is disabled")
        if phone in self._failing_targets:
            return _failed("whatsapp", "stub_delivery_failed", "Stub sender forced failure for recipient")
        self.sent.append((owner_id, phone, content))
        return ChannelSendResult(channel="whatsapp", status="sent", attempted_at=_now_utc())


def format_email_html(content: str, customer_name: str) -> str:
    body = html.escape(content).replace("\n", "<br>")
    name = html.escape(customer_name)
    return (
        "<!DOCTYPE html>"
        "<html><head><meta charset=\"utf-8\"><title>Notificação de Cobrança</title></head>"
        "<body style=\"font-family: sans-serif; line-height: 1.6; color: #333333;\">"
        f"<p>Olá {name},</p>"
        f"<p>{body}</p>"
        "<hr>"
        "<p style=\"color: #6b7280; font-size: 14px;\">Esta é uma mensagem automática. "
        "Se você tem alguma dúvida, entre em contato conosco.</p>"
        "</body></html>"
    )


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        secure: bool,
        username: str,
        password: str,
        sender_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        self._host = host
        self._port = port
        self._secure = secure
        self._username = username.strip()
        self._password = password
        self._sender_address = sender_address.strip() or self._username
        self._timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._username and self._password)

    def send_email(self, *, to: str, customer_name: str, content: str) -> ChannelSendResult:
        if not self.configured:
            logger.info("email not sent: SMTP credentials missing")
            return _failed("email", "email_not_configured", "SMTP credentials are not configured")

        message = EmailMessage()
        message["Subject"] = EMAIL_SUBJECT
        message["From"] = self._sender_address
        message["To"] = to
        message.set_content(content)
        message.add_alternative(format_email_html(content, customer_name), subtype="html")

        try:
            if self._secure:
                with smtplib.SMTP_SSL(
                    self._host,
                    self._port,
                    timeout=self._timeout_seconds,
                    context=ssl.create_default_context(),
                ) as client:
                    client.login(self._username, self._password)
                    client.send_message(message)
            else:
                with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as client:
                    client.starttls(context=ssl.create_default_context())
                    client.login(self._username, self._password)
                    client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            masked = mask_contact_target(to, "email")
            logger.warning("email delivery to %s failed: %s", masked, exc)
            return _failed("email", "smtp_error", f"{exc} (recipient: {masked})")
        except Exception as exc:
            masked = mask_contact_target(to, "email")
            logger.exception("email delivery to %s failed unexpectedly", masked)
            return _failed("email", "unexpected_error", f"{exc.__class__.__name__}: {exc} (recipient: {masked})")

        return ChannelSendResult(channel="email", status="sent", attempted_at=_now_utc())


class ProviderResolver:
    """Builds Evolution clients per owner and picks the instance to send through."""

    def __init__(
        self,
        *,
        store: RecordStore,
        default_api_url: str = "",
        default_api_key: str = "",
        timeout_seconds: int = 30,
        client_factory: Callable[..., EvolutionApiClient] = EvolutionApiClient,
    ) -> None:
        self._store = store
        self._default_api_url = default_api_url.strip()
        self._default_api_key = default_api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._client_factory = client_factory

    def client_for(self, owner_id: str) -> EvolutionApiClient:
        settings = self._store.get_channel_settings(owner_id)
        if settings is not None and settings.api_url.strip() and settings.api_key.strip():
            return self._client_factory(
                base_url=settings.api_url,
                api_key=settings.api_key,
                timeout_seconds=self._timeout_seconds,
            )
        if self._default_api_url and self._default_api_key:
            return self._client_factory(
                base_url=self._default_api_url,
                api_key=self._default_api_key,
                timeout_seconds=self._timeout_seconds,
            )
        raise ChannelSettingsMissingError(f"no Evolution API settings for owner {owner_id}")

    def connected_instance(self, owner_id: str) -> ChannelInstance | None:
        connected = [row for row in self._store.list_channel_instances(owner_id) if row.is_connected]
        if not connected:
            return None
        for row in connected:
            if row.is_default:
                return row
        return connected[0]


class EvolutionWhatsAppSender:
    def __init__(self, *, resolver: ProviderResolver) -> None:
        self._resolver = resolver

    def send_text(self, *, owner_id: str, phone: str, content: str) -> ChannelSendResult:
        try:
            number = normalize_phone(phone)
        except ValueError as exc:
            return _failed("whatsapp", "invalid_phone", str(exc))

        instance = self._resolver.connected_instance(owner_id)
        if instance is None:
            return _failed("whatsapp", "no_connected_instance", f"no connected WhatsApp instance for owner {owner_id}")

        try:
            client = self._resolver.client_for(owner_id)
        except ChannelSettingsMissingError as exc:
            return _failed("whatsapp", "provider_not_configured", str(exc))

        attempted_at = _now_utc()
        try:
            response = client.send_text_message(instance.instance_name, whatsapp_address(number), content)
        except EvolutionApiError as exc:
            masked = mask_contact_target(number, "whatsapp")
            return ChannelSendResult(
                channel="whatsapp",
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        except Exception as exc:
            masked = mask_contact_target(number, "whatsapp")
            logger.exception("whatsapp delivery to %s failed unexpectedly", masked)
            return ChannelSendResult(
                channel="whatsapp",
                status="failed",
                attempted_at=attempted_at,
                error_code="unexpected_error",
                error_message=f"{exc.__class__.__name__}: {exc} (recipient: {masked})",
            )

        if response_has_error(response):
            return ChannelSendResult(
                channel="whatsapp",
                status="failed",
                attempted_at=attempted_at,
                raw_response=response,
                error_code="provider_error",
                error_message="provider response carried an error marker",
            )
        return ChannelSendResult(
            channel="whatsapp",
            status="sent",
            attempted_at=attempted_at,
            raw_response=response,
        )


def mask_contact_target(contact_target: str, channel: MessageChannel) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "whatsapp":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
