from __future__ import annotations

import logging
from dataclasses import dataclass

from .evolution import EvolutionApiError, QrCode
from .models import ChannelInstance, ChannelStatus
from .notifier import ChannelSettingsMissingError, ProviderResolver
from .store import ChannelInstanceNotFoundError, RecordStore

logger = logging.getLogger(__name__)

_PROVIDER_STATES: dict[str, tuple[ChannelStatus, bool]] = {
    "open": ("connected", True),
    "connecting": ("connecting", False),
    "close": ("disconnected", False),
}

DISCONNECTED: tuple[ChannelStatus, bool] = ("disconnected", False)


class ChannelSyncError(RuntimeError):
    """Raised by an on-demand sync when the provider could not be queried."""

    def __init__(self, instance_id: int, error_code: str, message: str) -> None:
        super().__init__(message)
        self.instance_id = instance_id
        self.error_code = error_code


def map_provider_state(state: str) -> tuple[ChannelStatus, bool]:
    return _PROVIDER_STATES.get(state, ("unknown", False))


@dataclass
class ReconcileSummary:
    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    skipped_owners: int = 0


class ChannelStatusReconciler:
    """Keeps cached WhatsApp instance status in line with the provider's connection state."""

    def __init__(self, *, store: RecordStore, resolver: ProviderResolver) -> None:
        self._store = store
        self._resolver = resolver

    def sync_all(self) -> ReconcileSummary:
        summary = ReconcileSummary()
        by_owner: dict[str, list[ChannelInstance]] = {}
        for instance in self._store.list_channel_instances():
            by_owner.setdefault(instance.owner_id, []).append(instance)

        for owner_id, instances in by_owner.items():
            try:
                client = self._resolver.client_for(owner_id)
            except ChannelSettingsMissingError:
                summary.skipped_owners += 1
                logger.debug("skipping channel sync for owner %s: no provider settings", owner_id)
                continue

            for instance in instances:
                summary.checked += 1
                try:
                    provider_state = client.get_connection_state(instance.instance_name)
                    target = map_provider_state(provider_state.state)
                except EvolutionApiError as exc:
                    summary.errors += 1
                    logger.warning(
                        "connection state for instance %s unavailable: %s",
                        instance.instance_name,
                        exc.message,
                    )
                    target = DISCONNECTED
                except Exception:
                    summary.errors += 1
                    logger.exception("connection state for instance %s failed", instance.instance_name)
                    target = DISCONNECTED
                if self._write_if_changed(instance, target):
                    summary.updated += 1
                else:
                    summary.unchanged += 1
        return summary

    def sync_instance(self, instance_id: int, owner_id: str) -> ChannelInstance:
        instance = self._store.get_channel_instance(instance_id, owner_id)
        if instance is None:
            raise ChannelInstanceNotFoundError(instance_id)
        client = self._resolver.client_for(owner_id)
        try:
            provider_state = client.get_connection_state(instance.instance_name)
        except EvolutionApiError as exc:
            self._write_if_changed(instance, DISCONNECTED)
            raise ChannelSyncError(instance_id, exc.error_code, exc.message) from exc

        self._write_if_changed(instance, map_provider_state(provider_state.state))
        refreshed = self._store.get_channel_instance(instance_id, owner_id)
        if refreshed is None:
            raise ChannelInstanceNotFoundError(instance_id)
        return refreshed

    def fetch_qr_code(self, instance_id: int, owner_id: str) -> QrCode:
        instance = self._store.get_channel_instance(instance_id, owner_id)
        if instance is None:
            raise ChannelInstanceNotFoundError(instance_id)
        client = self._resolver.client_for(owner_id)
        try:
            return client.get_qr_code(instance.instance_name)
        except EvolutionApiError as exc:
            raise ChannelSyncError(instance_id, exc.error_code, exc.message) from exc

    def _write_if_changed(self, instance: ChannelInstance, target: tuple[ChannelStatus, bool]) -> bool:
        status, is_connected = target
        if instance.status == status and instance.is_connected == is_connected:
            return False
        self._store.update_channel_instance_status(instance.id, status=status, is_connected=is_connected)
        logger.info(
            "instance %s status %s -> %s",
            instance.instance_name,
            instance.status,
            status,
        )
        return True
