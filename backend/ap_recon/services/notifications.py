"""Notification sender used by the detectors.

The core only needs ``send(...)``; channel delivery (email, WhatsApp) is
handled downstream by whatever consumes the notifications table. The
database sender records the notification in the caller's session and logs
it, which also makes it visible as invoice activity to the staleness scan.
"""
import logging
import uuid
from typing import Protocol

from sqlalchemy.orm import Session

from ap_recon.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(
        self,
        tenant_id: uuid.UUID,
        recipient: str,
        notification_type: str,
        title: str,
        message: str,
        related_entity: tuple[str, str] | None = None,
        priority: str = "normal",
    ) -> None:
        ...


class DatabaseNotificationSender:
    """Writes a Notification row per send; delivery is someone else's job."""

    def __init__(self, db: Session):
        self.db = db

    def send(
        self,
        tenant_id: uuid.UUID,
        recipient: str,
        notification_type: str,
        title: str,
        message: str,
        related_entity: tuple[str, str] | None = None,
        priority: str = "normal",
    ) -> None:
        entity_type, entity_id = related_entity if related_entity else (None, None)
        notification = Notification(
            tenant_id=tenant_id,
            recipient=recipient,
            notification_type=notification_type,
            title=title,
            message=message,
            related_entity_type=entity_type,
            related_entity_id=str(entity_id) if entity_id else None,
            priority=priority,
        )
        self.db.add(notification)
        self.db.flush()
        logger.info(
            "\n"
            "=== NOTIFICATION [%s] ===\n"
            "To: %s (tenant %s)\n"
            "Title: %s\n"
            "%s\n"
            "=========================",
            priority.upper(),
            recipient,
            tenant_id,
            title,
            message,
        )
