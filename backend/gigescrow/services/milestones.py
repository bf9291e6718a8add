"""Milestone release scheduler.

Finds escrows that may be due for automatic release and asks the ledger to
release each one in its own unit of work. Eligibility is re-checked by the
ledger under the row lock, so duplicate or late ticks never double-release
and never release while a dispute is open.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gigescrow.db.base import utcnow
from gigescrow.db.session import transactional
from gigescrow.models.escrow import EscrowMilestone, EscrowTransaction
from gigescrow.services import ledger
from gigescrow.services.ledger import EscrowStatus
from gigescrow.services.notification import pop_queued

logger = logging.getLogger(__name__)

Dispatch = Callable[[list[int]], None]


def completion_percent(txn: EscrowTransaction) -> int:
    """Share of completed milestones, 0-100. No milestones counts as 100."""
    total = len(txn.milestones)
    if total == 0:
        return 100
    done = sum(1 for m in txn.milestones if m.is_completed)
    return done * 100 // total


async def find_release_candidates(db: AsyncSession, now: datetime, limit: int = 500) -> list[int]:
    """Due ESCROWED escrows with every milestone done, oldest first."""
    unfinished = (
        select(EscrowMilestone.id)
        .where(
            EscrowMilestone.escrow_transaction_id == EscrowTransaction.id,
            EscrowMilestone.is_completed.is_(False),
        )
        .exists()
    )
    result = await db.execute(
        select(EscrowTransaction.id)
        .where(
            EscrowTransaction.status == EscrowStatus.ESCROWED.value,
            or_(
                EscrowTransaction.release_on_completion.is_(True),
                EscrowTransaction.auto_release_date <= now,
            ),
            ~unfinished,
        )
        .order_by(EscrowTransaction.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def evaluate_release(
    session_factory: async_sessionmaker,
    txn_id: int,
    now: datetime | None = None,
    dispatch: Dispatch | None = None,
) -> bool:
    """Try to auto-release one escrow. Returns True when funds were released."""
    now = now or utcnow()
    async with session_factory() as db:
        try:
            async with transactional(db):
                released = await ledger.auto_release_if_eligible(db, txn_id, now)
        finally:
            queued = pop_queued(db)

    if released:
        logger.info("Escrow %d auto-released", txn_id)
        if dispatch is not None and queued:
            try:
                dispatch([n.id for n in queued])
            except Exception:
                logger.exception("Notification dispatch failed for escrow %d", txn_id)
    return released


async def run_release_sweep(
    session_factory: async_sessionmaker,
    now: datetime | None = None,
    dispatch: Dispatch | None = None,
) -> int:
    """Release every due escrow and return how many were released.

    A failure on one escrow is logged and the sweep moves on.
    """
    now = now or utcnow()
    async with session_factory() as db:
        candidates = await find_release_candidates(db, now)

    released = 0
    for txn_id in candidates:
        try:
            if await evaluate_release(session_factory, txn_id, now, dispatch):
                released += 1
        except Exception:
            logger.exception("Auto-release failed for escrow %d", txn_id)

    if candidates:
        logger.info("Release sweep: %d candidates, %d released", len(candidates), released)
    return released
