"""Escrow/dispute orchestrator: the transactional entry points.

Each public method runs one unit of work on the given session, translates
storage failures into the error taxonomy and, once the unit has committed,
hands the queued notification ids to the dispatcher. A failed dispatch is
logged and never undoes the commit.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.core.config import settings
from gigescrow.db.base import utcnow
from gigescrow.db.session import transactional
from gigescrow.models.dispute import Dispute, DisputeEvidence, DisputeMessage
from gigescrow.models.escrow import EscrowMilestone, EscrowTransaction
from gigescrow.services import disputes, ledger
from gigescrow.services.agents import AssignmentPolicy, build_policy
from gigescrow.services.audit import log_audit
from gigescrow.services.dispute_state_machine import Actor
from gigescrow.services.disputes import EvidenceInput
from gigescrow.services.errors import (
    Conflict,
    EscrowError,
    Forbidden,
    InvalidStateTransition,
    Unexpected,
)
from gigescrow.services.notification import NotificationType, pop_queued, queue_notification

logger = logging.getLogger(__name__)

T = TypeVar("T")

Dispatcher = Callable[[list[int]], None]
ReleaseEvaluator = Callable[[int], None]


@dataclass(frozen=True)
class Caller:
    user_id: str
    is_admin: bool = False


@dataclass(frozen=True)
class CreateDisputeRequest:
    escrow_transaction_id: int
    type: str
    reason: str
    evidence: list[EvidenceInput] = field(default_factory=list)


def celery_dispatcher(notification_ids: list[int]) -> None:
    from gigescrow.workers.notifications import deliver_notifications

    deliver_notifications.delay(notification_ids)


def celery_release_evaluator(txn_id: int) -> None:
    from gigescrow.workers.release_scheduler import evaluate_milestone_release

    evaluate_milestone_release.delay(txn_id)


def _require_admin(caller: Caller, what: str) -> None:
    if not caller.is_admin:
        raise Forbidden(f"Only admins can {what}")


class EscrowDisputeOrchestrator:
    def __init__(
        self,
        *,
        policy: AssignmentPolicy,
        admin_ids: list[str] | None = None,
        dispatcher: Dispatcher | None = None,
        release_evaluator: ReleaseEvaluator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.policy = policy
        self.admin_ids = list(admin_ids or [])
        self.dispatcher = dispatcher or celery_dispatcher
        self.release_evaluator = release_evaluator or celery_release_evaluator
        self.clock = clock

    # -- unit of work ------------------------------------------------------

    async def _run(
        self,
        db: AsyncSession,
        operation: str,
        work: Callable[[], Awaitable[T]],
        **context,
    ) -> T:
        try:
            async with transactional(db):
                result = await work()
        except EscrowError as exc:
            pop_queued(db)
            if isinstance(exc, Unexpected):
                logger.exception("%s failed", operation, extra=context)
            raise
        except IntegrityError as exc:
            pop_queued(db)
            logger.warning("%s lost a concurrent update: %s", operation, exc.orig, extra=context)
            raise Conflict("A concurrent change won the race; retry the request", retryable=True) from exc
        except SQLAlchemyError as exc:
            pop_queued(db)
            logger.exception("%s failed in storage", operation, extra=context)
            raise Unexpected("Storage failure") from exc
        except Exception as exc:
            pop_queued(db)
            logger.exception("%s failed", operation, extra=context)
            raise Unexpected("Unexpected failure") from exc

        self._dispatch(db, operation)
        return result

    def _dispatch(self, db: AsyncSession, operation: str) -> None:
        ids = [n.id for n in pop_queued(db)]
        if not ids:
            return
        try:
            self.dispatcher(ids)
        except Exception:
            logger.exception("Notification dispatch failed after %s", operation, extra={"ids": ids})

    # -- disputes ----------------------------------------------------------

    async def create_dispute(
        self, db: AsyncSession, caller: Caller, request: CreateDisputeRequest
    ) -> Dispute:
        async def work():
            return await disputes.create_dispute(
                db,
                caller_id=caller.user_id,
                escrow_transaction_id=request.escrow_transaction_id,
                type=request.type,
                reason=request.reason,
                evidence=request.evidence,
                policy=self.policy,
                admin_ids=self.admin_ids,
                now=self.clock(),
            )

        return await self._run(
            db, "create_dispute", work,
            user_id=caller.user_id, escrow_transaction_id=request.escrow_transaction_id,
        )

    async def resolve_dispute(
        self,
        db: AsyncSession,
        caller: Caller,
        dispute_id: int,
        outcome: str,
        *,
        description: str | None = None,
        payee_amount: int | None = None,
        payer_amount: int | None = None,
    ) -> Dispute:
        _require_admin(caller, "resolve disputes")

        async def work():
            return await disputes.resolve(
                db,
                dispute_id,
                outcome=outcome,
                resolver_id=caller.user_id,
                description=description,
                payee_amount=payee_amount,
                payer_amount=payer_amount,
                now=self.clock(),
            )

        return await self._run(db, "resolve_dispute", work, dispute_id=dispute_id, outcome=outcome)

    async def start_review(self, db: AsyncSession, caller: Caller, dispute_id: int) -> Dispute:
        _require_admin(caller, "review disputes")

        async def work():
            return await disputes.start_review(
                db, dispute_id, actor_id=caller.user_id, actor=Actor.ADMIN, now=self.clock()
            )

        return await self._run(db, "start_review", work, dispute_id=dispute_id)

    async def close_dispute(self, db: AsyncSession, caller: Caller, dispute_id: int) -> Dispute:
        _require_admin(caller, "close disputes")

        async def work():
            return await disputes.close(
                db, dispute_id, actor_id=caller.user_id, actor=Actor.ADMIN, now=self.clock()
            )

        return await self._run(db, "close_dispute", work, dispute_id=dispute_id)

    async def add_message(
        self, db: AsyncSession, caller: Caller, dispute_id: int, content: str
    ) -> DisputeMessage:
        async def work():
            return await disputes.add_message(
                db, dispute_id, sender_id=caller.user_id, content=content, is_admin=caller.is_admin
            )

        return await self._run(db, "add_message", work, dispute_id=dispute_id)

    async def add_evidence(
        self, db: AsyncSession, caller: Caller, dispute_id: int, evidence: EvidenceInput
    ) -> DisputeEvidence:
        async def work():
            return await disputes.add_evidence(
                db, dispute_id, uploader_id=caller.user_id, evidence=evidence,
                is_admin=caller.is_admin,
            )

        return await self._run(db, "add_evidence", work, dispute_id=dispute_id)

    async def get_dispute(self, db: AsyncSession, caller: Caller, dispute_id: int) -> Dispute:
        dispute = await disputes.get_dispute(db, dispute_id)
        disputes.ensure_participant(dispute, caller.user_id, caller.is_admin)
        return dispute

    # -- escrow ------------------------------------------------------------

    async def open_escrow(
        self, db: AsyncSession, caller: Caller, *, payee_id: str, amount: int, **terms
    ) -> EscrowTransaction:
        async def work():
            return await ledger.open_escrow(
                db, payer_id=caller.user_id, payee_id=payee_id, amount=amount, **terms
            )

        return await self._run(db, "open_escrow", work, user_id=caller.user_id)

    async def fund_escrow(
        self,
        db: AsyncSession,
        txn_id: int,
        *,
        caller: Caller | None = None,
        from_wallet: bool = False,
    ) -> EscrowTransaction:
        """Settled payment from the processor, or a payer funding from their wallet."""

        async def work():
            if from_wallet:
                txn = await ledger.get_transaction(db, txn_id)
                if caller is None or caller.user_id != txn.payer_id:
                    raise Forbidden("Only the payer can fund this escrow")
            return await ledger.lock(
                db,
                txn_id,
                actor_id=caller.user_id if caller else None,
                from_wallet=from_wallet,
                now=self.clock(),
            )

        return await self._run(db, "fund_escrow", work, escrow_transaction_id=txn_id)

    async def payment_failed(
        self, db: AsyncSession, txn_id: int, reason: str | None = None
    ) -> EscrowTransaction:
        """A failed charge leaves the escrow PENDING; the payer is told."""

        async def work():
            txn = await ledger.get_transaction_for_update(db, txn_id)
            if txn.status != ledger.EscrowStatus.PENDING:
                raise InvalidStateTransition(txn.status, "payment_failed")
            log_audit(
                db,
                action="escrow.payment_failed",
                entity_type="escrow_transaction",
                entity_id=txn.id,
                user_id=ledger.SYSTEM_ACTOR,
                details={"reason": reason},
            )
            queue_notification(
                db,
                user_id=txn.payer_id,
                type=NotificationType.PAYMENT_FAILED,
                title="Payment failed",
                message=reason or f"The payment for transaction {txn.id} did not go through",
                data={"escrow_transaction_id": txn.id},
            )
            return txn

        return await self._run(db, "payment_failed", work, escrow_transaction_id=txn_id)

    async def release_escrow(
        self,
        db: AsyncSession,
        caller: Caller,
        txn_id: int,
        amount: int | None = None,
        override: bool = False,
    ) -> EscrowTransaction:
        async def work():
            txn = await ledger.get_transaction(db, txn_id)
            if not caller.is_admin and caller.user_id != txn.payer_id:
                raise Forbidden("Only the payer or an admin can release this escrow")
            return await ledger.release(
                db, txn_id, actor_id=caller.user_id, amount=amount, override=override,
                now=self.clock(),
            )

        return await self._run(db, "release_escrow", work, escrow_transaction_id=txn_id)

    async def refund_escrow(
        self, db: AsyncSession, caller: Caller, txn_id: int, amount: int | None = None
    ) -> EscrowTransaction:
        async def work():
            txn = await ledger.get_transaction(db, txn_id)
            if not caller.is_admin and caller.user_id != txn.payee_id:
                raise Forbidden("Only the payee or an admin can refund this escrow")
            return await ledger.refund(
                db, txn_id, actor_id=caller.user_id, amount=amount, now=self.clock()
            )

        return await self._run(db, "refund_escrow", work, escrow_transaction_id=txn_id)

    async def complete_milestone(
        self, db: AsyncSession, caller: Caller, txn_id: int, milestone_id: int
    ) -> tuple[EscrowTransaction, EscrowMilestone]:
        async def work():
            txn, milestone, newly = await ledger.complete_milestone(
                db, txn_id, milestone_id, actor_id=caller.user_id, now=self.clock()
            )
            if newly:
                other = txn.payee_id if caller.user_id == txn.payer_id else txn.payer_id
                queue_notification(
                    db,
                    user_id=other,
                    type=NotificationType.PROJECT_UPDATE,
                    title="Milestone completed",
                    message=f'Milestone "{milestone.title}" was marked complete',
                    data={"escrow_transaction_id": txn.id, "milestone_id": milestone.id},
                )
            return txn, milestone, newly

        txn, milestone, newly = await self._run(
            db, "complete_milestone", work, escrow_transaction_id=txn_id, milestone_id=milestone_id
        )
        if newly:
            try:
                self.release_evaluator(txn.id)
            except Exception:
                logger.exception("Could not enqueue release evaluation for escrow %d", txn.id)
        return txn, milestone

    async def get_escrow(self, db: AsyncSession, caller: Caller, txn_id: int) -> EscrowTransaction:
        txn = await ledger.get_transaction(db, txn_id)
        if not caller.is_admin and caller.user_id not in (txn.payer_id, txn.payee_id):
            raise Forbidden("Not a party to this escrow transaction")
        return txn


def build_orchestrator() -> EscrowDisputeOrchestrator:
    return EscrowDisputeOrchestrator(
        policy=build_policy(settings.dispute_assignment_policy, settings.agent_roster()),
        admin_ids=settings.dispute_admin_ids,
    )
