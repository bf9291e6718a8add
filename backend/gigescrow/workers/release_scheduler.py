"""Celery tasks for milestone-driven and timed escrow release.

- auto_release_due_escrows: beat sweep over escrows whose release is due
- evaluate_milestone_release: enqueued after a milestone is completed
"""

import logging

from gigescrow.db.session import async_session_factory
from gigescrow.services.milestones import evaluate_release, run_release_sweep
from gigescrow.services.orchestrator import celery_dispatcher
from gigescrow.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


@celery_app.task(
    name="auto_release_due_escrows", bind=True, max_retries=3, default_retry_delay=30
)
def auto_release_due_escrows(self) -> int:
    """Release every ESCROWED transaction that is due and fully delivered."""
    try:
        released = worker_loop().run_until_complete(
            run_release_sweep(async_session_factory, dispatch=celery_dispatcher)
        )
    except Exception as exc:
        logger.exception("auto_release_due_escrows failed")
        raise self.retry(exc=exc)
    if released:
        logger.info("Auto-released %d escrows", released)
    return released


@celery_app.task(
    name="evaluate_milestone_release", bind=True, max_retries=3, default_retry_delay=10
)
def evaluate_milestone_release(self, txn_id: int) -> bool:
    """Release a single escrow if its last milestone just completed."""
    try:
        return worker_loop().run_until_complete(
            evaluate_release(async_session_factory, txn_id, dispatch=celery_dispatcher)
        )
    except Exception as exc:
        logger.exception("evaluate_milestone_release failed for escrow %d", txn_id)
        raise self.retry(exc=exc)
