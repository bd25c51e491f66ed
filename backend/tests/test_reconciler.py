from __future__ import annotations

import http.client
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from billing_engine.evolution import ConnectionState, EvolutionApiError, MalformedProviderResponse, QrCode
from billing_engine.models import ChannelSettings
from billing_engine.notifier import ChannelSettingsMissingError, ProviderResolver
from billing_engine.reconciler import ChannelStatusReconciler, ChannelSyncError, map_provider_state
from billing_engine.store import ChannelInstanceNotFoundError, InMemoryRecordStore

OWNER = "owner-1"


class FakeEvolutionClient:
    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.calls: list[str] = []

    def get_connection_state(self, instance_name: str) -> ConnectionState:
        self.calls.append(instance_name)
        response = self.responses[instance_name]
        if isinstance(response, Exception):
            raise response
        return ConnectionState.parse(response)

    def get_qr_code(self, instance_name: str) -> QrCode:
        return QrCode.parse(self.responses[f"qr:{instance_name}"])


class CountingStore(InMemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.status_writes = 0

    def update_channel_instance_status(self, instance_id, *, status, is_connected):  # type: ignore[no-untyped-def]
        self.status_writes += 1
        return super().update_channel_instance_status(instance_id, status=status, is_connected=is_connected)


def _make_reconciler(
    responses: dict[str, Any],
    *,
    with_settings: bool = True,
) -> tuple[ChannelStatusReconciler, CountingStore, FakeEvolutionClient]:
    store = CountingStore()
    client = FakeEvolutionClient(responses)
    if with_settings:
        store.save_channel_settings(ChannelSettings(owner_id=OWNER, api_url="https://evo.test", api_key="key-1"))
    resolver = ProviderResolver(store=store, client_factory=lambda **_: client)
    return ChannelStatusReconciler(store=store, resolver=resolver), store, client


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        ("open", ("connected", True)),
        ("connecting", ("connecting", False)),
        ("close", ("disconnected", False)),
        ("refused", ("unknown", False)),
    ],
)
def test_map_provider_state(state: str, expected: tuple[str, bool]) -> None:
    assert map_provider_state(state) == expected


def test_open_state_connects_and_second_poll_does_not_write() -> None:
    reconciler, store, _ = _make_reconciler({"inst-1": {"instance": {"instanceName": "inst-1", "state": "open"}}})
    instance = store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    first = reconciler.sync_all()
    second = reconciler.sync_all()

    assert first.updated == 1
    assert second.updated == 0
    assert second.unchanged == 1
    assert store.status_writes == 1
    refreshed = store.get_channel_instance(instance.id, OWNER)
    assert refreshed is not None
    assert refreshed.status == "connected"
    assert refreshed.is_connected is True


def test_top_level_state_field_is_accepted() -> None:
    reconciler, store, _ = _make_reconciler({"inst-1": {"state": "connecting"}})
    instance = store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    reconciler.sync_all()

    refreshed = store.get_channel_instance(instance.id, OWNER)
    assert refreshed is not None
    assert refreshed.status == "connecting"


def test_provider_error_marks_disconnected_once() -> None:
    reconciler, store, _ = _make_reconciler({"inst-1": EvolutionApiError("http_500", "HTTP 500: boom")})
    instance = store.add_channel_instance(
        OWNER, name="Principal", instance_name="inst-1", status="connected", is_connected=True
    )

    first = reconciler.sync_all()
    reconciler.sync_all()

    assert first.errors == 1
    assert store.status_writes == 1
    refreshed = store.get_channel_instance(instance.id, OWNER)
    assert refreshed is not None
    assert refreshed.status == "disconnected"
    assert refreshed.is_connected is False


def test_malformed_payload_is_treated_as_error() -> None:
    reconciler, store, _ = _make_reconciler({"inst-1": {"unexpected": True}})
    instance = store.add_channel_instance(
        OWNER, name="Principal", instance_name="inst-1", status="connected", is_connected=True
    )

    summary = reconciler.sync_all()

    assert summary.errors == 1
    refreshed = store.get_channel_instance(instance.id, OWNER)
    assert refreshed is not None
    assert refreshed.status == "disconnected"


def test_owner_without_settings_is_skipped() -> None:
    reconciler, store, client = _make_reconciler({"inst-1": {"state": "open"}}, with_settings=False)
    store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    summary = reconciler.sync_all()

    assert summary.skipped_owners == 1
    assert client.calls == []
    assert store.status_writes == 0


def test_one_failing_instance_does_not_block_the_others() -> None:
    reconciler, store, _ = _make_reconciler(
        {
            "inst-1": EvolutionApiError("connection_error", "Connection error: refused"),
            "inst-2": {"instance": {"state": "open"}},
        }
    )
    store.add_channel_instance(OWNER, name="A", instance_name="inst-1")
    second = store.add_channel_instance(OWNER, name="B", instance_name="inst-2")

    summary = reconciler.sync_all()

    assert summary.checked == 2
    refreshed = store.get_channel_instance(second.id, OWNER)
    assert refreshed is not None
    assert refreshed.is_connected is True


@patch("billing_engine.evolution.urllib.request.urlopen")
def test_dropped_provider_connection_disconnects_every_instance(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = http.client.RemoteDisconnected("Remote end closed connection without response")
    store = CountingStore()
    first = store.add_channel_instance(OWNER, name="A", instance_name="inst-1", status="connected", is_connected=True)
    second = store.add_channel_instance(OWNER, name="B", instance_name="inst-2", status="connected", is_connected=True)
    resolver = ProviderResolver(store=store, default_api_url="https://evo.test", default_api_key="key-1")
    reconciler = ChannelStatusReconciler(store=store, resolver=resolver)

    summary = reconciler.sync_all()

    assert summary.checked == 2
    assert summary.errors == 2
    for instance in (first, second):
        refreshed = store.get_channel_instance(instance.id, OWNER)
        assert refreshed is not None
        assert refreshed.status == "disconnected"
        assert refreshed.is_connected is False


def test_unexpected_client_error_is_isolated_per_instance() -> None:
    reconciler, store, _ = _make_reconciler(
        {
            "inst-1": RuntimeError("client bug"),
            "inst-2": {"instance": {"state": "open"}},
        }
    )
    first = store.add_channel_instance(OWNER, name="A", instance_name="inst-1", status="connected", is_connected=True)
    second = store.add_channel_instance(OWNER, name="B", instance_name="inst-2")

    summary = reconciler.sync_all()

    assert summary.errors == 1
    refreshed_first = store.get_channel_instance(first.id, OWNER)
    refreshed_second = store.get_channel_instance(second.id, OWNER)
    assert refreshed_first is not None and refreshed_first.status == "disconnected"
    assert refreshed_second is not None and refreshed_second.is_connected is True


def test_sync_instance_returns_refreshed_instance() -> None:
    reconciler, store, _ = _make_reconciler({"inst-1": {"instance": {"state": "open"}}})
    instance = store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    refreshed = reconciler.sync_instance(instance.id, OWNER)

    assert refreshed.status == "connected"
    assert refreshed.is_connected is True


def test_sync_instance_raises_after_persisting_disconnected() -> None:
    reconciler, store, _ = _make_reconciler({"inst-1": EvolutionApiError("timeout", "Request timed out")})
    instance = store.add_channel_instance(
        OWNER, name="Principal", instance_name="inst-1", status="connected", is_connected=True
    )

    with pytest.raises(ChannelSyncError) as exc_info:
        reconciler.sync_instance(instance.id, OWNER)

    assert exc_info.value.error_code == "timeout"
    refreshed = store.get_channel_instance(instance.id, OWNER)
    assert refreshed is not None
    assert refreshed.status == "disconnected"


def test_sync_instance_not_found_and_missing_settings() -> None:
    reconciler, store, _ = _make_reconciler({}, with_settings=False)
    instance = store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    with pytest.raises(ChannelInstanceNotFoundError):
        reconciler.sync_instance(999, OWNER)
    with pytest.raises(ChannelInstanceNotFoundError):
        reconciler.sync_instance(instance.id, "other-owner")
    with pytest.raises(ChannelSettingsMissingError):
        reconciler.sync_instance(instance.id, OWNER)


def test_fetch_qr_code_parses_nested_payload() -> None:
    reconciler, store, _ = _make_reconciler({"qr:inst-1": {"qrcode": {"base64": "data:image/png;base64,AAA"}}})
    instance = store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    qr_code = reconciler.fetch_qr_code(instance.id, OWNER)

    assert qr_code.base64 == "data:image/png;base64,AAA"
    assert qr_code.pairing_code is None


def test_fetch_qr_code_rejects_empty_payload() -> None:
    reconciler, store, _ = _make_reconciler({"qr:inst-1": {"status": "ok"}})
    instance = store.add_channel_instance(OWNER, name="Principal", instance_name="inst-1")

    with pytest.raises(ChannelSyncError) as exc_info:
        reconciler.fetch_qr_code(instance.id, OWNER)

    assert exc_info.value.error_code == "malformed_response"


def test_malformed_provider_response_is_an_evolution_error() -> None:
    assert issubclass(MalformedProviderResponse, EvolutionApiError)
