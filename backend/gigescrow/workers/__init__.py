import asyncio

from celery import Celery

from gigescrow.core.config import settings

_loop = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


celery_app = Celery(
    "gigescrow_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "auto-release-due-escrows": {
            "task": "auto_release_due_escrows",
            "schedule": settings.auto_release_interval_seconds,
        },
        "dispatch-pending-notifications": {
            "task": "dispatch_pending_notifications",
            "schedule": settings.notification_sweep_interval_seconds,
        },
    },
)

# Import tasks so they are registered with the celery app
import gigescrow.workers.notifications  # noqa: F401, E402
import gigescrow.workers.release_scheduler  # noqa: F401, E402
