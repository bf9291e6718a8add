"""Notification outbox and delivery to the external event sink.

Events are queued as ``Notification`` rows inside the unit of work that
produced them and handed to the sink only after that unit commits. Delivery
is fire-and-forget: a failed send is recorded on the row and logged, never
retried here and never allowed to affect escrow or dispute state.
"""

import logging
from datetime import datetime
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.core.config import settings
from gigescrow.db.base import utcnow
from gigescrow.models.notification import Notification

logger = logging.getLogger(__name__)

_QUEUED_KEY = "queued_notifications"


class NotificationType:
    DISPUTE_CREATED = "DISPUTE_CREATED"
    DISPUTE_ASSIGNED = "DISPUTE_ASSIGNED"
    DISPUTE_MESSAGE = "DISPUTE_MESSAGE"
    DISPUTE_EVIDENCE = "DISPUTE_EVIDENCE"
    DISPUTE_UNDER_REVIEW = "DISPUTE_UNDER_REVIEW"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"
    PROJECT_UPDATE = "PROJECT_UPDATE"


def queue_notification(
    db: AsyncSession,
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: dict | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id, type=type, title=title, message=message, data=data
    )
    db.add(notification)
    db.info.setdefault(_QUEUED_KEY, []).append(notification)
    return notification


def pop_queued(db: AsyncSession) -> list[Notification]:
    """Take the notifications queued on this session since the last pop."""
    return db.info.pop(_QUEUED_KEY, [])


def to_event(notification: Notification) -> dict:
    """Wire shape accepted by the sink."""
    return {
        "type": notification.type,
        "userId": notification.user_id,
        "title": notification.title,
        "message": notification.message,
    }


class NotificationSink(Protocol):
    async def send(self, event: dict) -> None: ...


class LoggingNotificationSink:
    """Used when no webhook is configured."""

    async def send(self, event: dict) -> None:
        logger.info("notification", extra={"event": event})


class HttpNotificationSink:
    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def send(self, event: dict) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=event)
            response.raise_for_status()


def build_sink() -> NotificationSink:
    if settings.notification_webhook_url:
        return HttpNotificationSink(
            settings.notification_webhook_url, settings.notification_timeout_seconds
        )
    return LoggingNotificationSink()


async def deliver_pending(
    db: AsyncSession,
    sink: NotificationSink,
    ids: list[int] | None = None,
    created_before: datetime | None = None,
    limit: int = 200,
) -> int:
    """Send undispatched notifications (optionally only ``ids``); returns the sent count.

    Rows are claimed with ``SKIP LOCKED`` so a sweep and a per-commit task
    never send the same notification twice.
    """
    query = select(Notification).where(Notification.dispatched_at.is_(None))
    if ids is not None:
        if not ids:
            return 0
        query = query.where(Notification.id.in_(ids))
    if created_before is not None:
        query = query.where(Notification.created_at < created_before)
    result = await db.execute(
        query.order_by(Notification.id).limit(limit).with_for_update(skip_locked=True)
    )
    pending = list(result.scalars().all())

    sent = 0
    for notification in pending:
        try:
            await sink.send(to_event(notification))
            sent += 1
        except Exception as exc:
            logger.warning(
                "Notification %d to %s not delivered: %s",
                notification.id,
                notification.user_id,
                exc,
            )
            notification.delivery_error = str(exc)[:1000]
        notification.dispatched_at = utcnow()
    await db.commit()
    return sent
