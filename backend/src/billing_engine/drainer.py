from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .models import MessageHistory
from .notifier import WhatsAppSender
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class DrainSummary:
    due: int = 0
    sent: int = 0
    failed: int = 0
    already_completed: int = 0


class ScheduledMessageDrainer:
    """Sends WhatsApp messages whose scheduled time has passed, once each."""

    def __init__(self, *, store: RecordStore, whatsapp_sender: WhatsAppSender) -> None:
        self._store = store
        self._whatsapp_sender = whatsapp_sender

    def drain(self, now: datetime) -> DrainSummary:
        summary = DrainSummary()
        for message in self._store.list_due_scheduled_messages(now):
            summary.due += 1
            try:
                sent = self._send(message)
            except Exception:
                logger.exception("scheduled message %s raised while sending", message.id)
                sent = False

            status = "sent" if sent else "failed"
            completed = self._store.complete_scheduled_message(
                message.id,
                status=status,
                sent_at=now if sent else None,
            )
            if not completed:
                summary.already_completed += 1
                logger.info("scheduled message %s was completed by another run", message.id)
                continue
            if sent:
                summary.sent += 1
            else:
                summary.failed += 1
        if summary.due:
            logger.info(
                "scheduled messages drained: due=%d sent=%d failed=%d",
                summary.due,
                summary.sent,
                summary.failed,
            )
        return summary

    def _send(self, message: MessageHistory) -> bool:
        if not message.recipient_phone:
            logger.warning("scheduled message %s has no recipient phone", message.id)
            return False
        result = self._whatsapp_sender.send_text(
            owner_id=message.owner_id,
            phone=message.recipient_phone,
            content=message.content,
        )
        if not result.ok:
            logger.warning(
                "scheduled message %s failed: %s %s",
                message.id,
                result.error_code,
                result.error_message,
            )
        return result.ok
