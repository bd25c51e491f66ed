from __future__ import annotations

import http.client
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

WHATSAPP_ADDRESS_SUFFIX = "@s.whatsapp.net"


class EvolutionApiError(Exception):
    """Raised when an Evolution API request fails or returns a non-2xx status."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class MalformedProviderResponse(EvolutionApiError):
    """Raised when a provider payload lacks every field the parser accepts."""

    def __init__(self, message: str) -> None:
        super().__init__("malformed_response", message)


@dataclass(frozen=True)
class ConnectionState:
    instance_name: str | None
    state: str

    @classmethod
    def parse(cls, payload: object) -> ConnectionState:
        if not isinstance(payload, dict):
            raise MalformedProviderResponse("connection state response is not a JSON object")
        instance = payload.get("instance")
        if isinstance(instance, dict) and isinstance(instance.get("state"), str):
            name = instance.get("instanceName")
            return cls(instance_name=name if isinstance(name, str) else None, state=instance["state"])
        if isinstance(payload.get("state"), str):
            return cls(instance_name=None, state=payload["state"])
        raise MalformedProviderResponse("connection state response has no instance.state or state field")


@dataclass(frozen=True)
class QrCode:
    base64: str | None
    pairing_code: str | None
    code: str | None

    @classmethod
    def parse(cls, payload: object) -> QrCode:
        if not isinstance(payload, dict):
            raise MalformedProviderResponse("qr code response is not a JSON object")
        source = payload.get("qrcode") if isinstance(payload.get("qrcode"), dict) else payload
        base64 = source.get("base64")
        pairing_code = source.get("pairingCode")
        code = source.get("code")
        parsed = cls(
            base64=base64 if isinstance(base64, str) and base64 else None,
            pairing_code=pairing_code if isinstance(pairing_code, str) and pairing_code else None,
            code=code if isinstance(code, str) and code else None,
        )
        if parsed.base64 is None and parsed.pairing_code is None and parsed.code is None:
            raise MalformedProviderResponse("qr code response has no base64, pairingCode or code field")
        return parsed


def whatsapp_address(phone: str) -> str:
    return f"{phone}{WHATSAPP_ADDRESS_SUFFIX}"


def normalize_phone(phone: str) -> str:
    """Keep digits only; 11-digit Brazilian numbers get the 55 country code."""
    digits = "".join(ch for ch in phone if ch.isdigit())
    if not digits:
        raise ValueError("phone number has no digits")
    if len(digits) == 11:
        return f"55{digits}"
    return digits


class EvolutionApiClient:
    """Evolution API (WhatsApp) client over plain HTTP."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    @property
    def base_url(self) -> str:
        return self._base_url

    def send_text_message(self, instance_name: str, number: str, text: str) -> Any:
        return self._request(
            "POST",
            f"/message/sendText/{urllib.parse.quote(instance_name, safe='')}",
            {"number": number, "text": text},
        )

    def get_connection_state(self, instance_name: str) -> ConnectionState:
        payload = self._request(
            "GET",
            f"/instance/connectionState/{urllib.parse.quote(instance_name, safe='')}",
        )
        return ConnectionState.parse(payload)

    def get_qr_code(self, instance_name: str) -> QrCode:
        payload = self._request(
            "GET",
            f"/instance/connect/{urllib.parse.quote(instance_name, safe='')}",
        )
        return QrCode.parse(payload)

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        url = f"{self._base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        logger.debug("evolution request %s %s", method, url)
        try:
            request = urllib.request.Request(
                url,
                data=data,
                headers={
                    "apikey": self._api_key,
                    "Content-Type": "application/json",
                },
                method=method,
            )
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            raise EvolutionApiError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise EvolutionApiError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise EvolutionApiError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (http.client.HTTPException, OSError, ValueError) as exc:
            raise EvolutionApiError(
                error_code="connection_error",
                message=f"Connection error: {exc.__class__.__name__}: {exc}",
            ) from exc

        try:
            raw = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedProviderResponse(f"response body is not valid UTF-8: {exc}") from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
