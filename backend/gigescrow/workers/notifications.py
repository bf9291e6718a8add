"""Celery tasks delivering outbox notifications to the external sink.

Delivery is fire-and-forget: failures are recorded on the row and logged,
and the row is not sent again.
"""

import logging
from datetime import timedelta

from gigescrow.db.base import utcnow
from gigescrow.db.session import async_session_factory
from gigescrow.services.notification import build_sink, deliver_pending
from gigescrow.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)

# Rows younger than this are left to their own deliver_notifications task
SWEEP_GRACE = timedelta(seconds=60)


@celery_app.task(name="deliver_notifications", bind=True, max_retries=3, default_retry_delay=15)
def deliver_notifications(self, notification_ids: list[int]) -> int:
    """Deliver the notifications committed by one unit of work."""

    async def _run() -> int:
        async with async_session_factory() as db:
            return await deliver_pending(db, build_sink(), ids=notification_ids)

    try:
        return worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("deliver_notifications failed for %s", notification_ids)
        raise self.retry(exc=exc)


@celery_app.task(name="dispatch_pending_notifications", bind=True, max_retries=3, default_retry_delay=30)
def dispatch_pending_notifications(self) -> int:
    """Sweep up notifications whose immediate dispatch never ran."""

    async def _run() -> int:
        async with async_session_factory() as db:
            return await deliver_pending(db, build_sink(), created_before=utcnow() - SWEEP_GRACE)

    try:
        sent = worker_loop().run_until_complete(_run())
    except Exception as exc:
        logger.exception("dispatch_pending_notifications failed")
        raise self.retry(exc=exc)
    if sent:
        logger.info("Delivered %d pending notifications", sent)
    return sent
