"""Escrow ledger. Owns EscrowTransaction status and wallet bookkeeping.

Every operation locks the transaction row (``SELECT ... FOR UPDATE``) before
reading its status, then locks the affected wallets in user-id order, and
only adds/flushes. The caller's unit of work commits, so a status change
and its balance movement are always persisted together or not at all.

Invariant kept on every transition: a payer's ``frozen_amount`` equals the
sum of their transactions currently ESCROWED or DISPUTED.
"""

import logging
from datetime import datetime
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.db.base import utcnow
from gigescrow.models.dispute import Dispute
from gigescrow.models.escrow import EscrowMilestone, EscrowTransaction
from gigescrow.models.wallet import Wallet
from gigescrow.services.audit import log_audit
from gigescrow.services.dispute_state_machine import ACTIVE_STATUSES
from gigescrow.services.errors import (
    DisputeBlocksRelease,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    Unexpected,
    ValidationError,
)
from gigescrow.services.fees import FeeBreakdown, compute_fees
from gigescrow.services.notification import NotificationType, queue_notification

logger = logging.getLogger(__name__)


class EscrowStatus(StrEnum):
    PENDING = "PENDING"
    ESCROWED = "ESCROWED"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


FROZEN_STATUSES: frozenset[EscrowStatus] = frozenset({
    EscrowStatus.ESCROWED,
    EscrowStatus.DISPUTED,
})

SYSTEM_ACTOR = "system"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_transaction(db: AsyncSession, txn_id: int) -> EscrowTransaction:
    txn = await db.get(EscrowTransaction, txn_id)
    if txn is None:
        raise NotFound(f"Escrow transaction {txn_id} not found")
    return txn


async def get_transaction_for_update(db: AsyncSession, txn_id: int) -> EscrowTransaction:
    """Lock the row and reload it, so status reads happen under the lock."""
    result = await db.execute(
        select(EscrowTransaction)
        .where(EscrowTransaction.id == txn_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise NotFound(f"Escrow transaction {txn_id} not found")
    return txn


async def get_active_dispute(db: AsyncSession, txn_id: int) -> Dispute | None:
    result = await db.execute(
        select(Dispute).where(
            Dispute.escrow_transaction_id == txn_id,
            Dispute.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
    )
    return result.scalars().first()


async def has_active_dispute(db: AsyncSession, txn_id: int) -> bool:
    return await get_active_dispute(db, txn_id) is not None


async def get_wallet(db: AsyncSession, user_id: str, currency: str) -> Wallet | None:
    result = await db.execute(
        select(Wallet).where(Wallet.user_id == user_id, Wallet.currency == currency)
    )
    return result.scalar_one_or_none()


async def _lock_wallets(db: AsyncSession, currency: str, *user_ids: str) -> dict[str, Wallet]:
    """Lock (creating if needed) the wallets of ``user_ids`` in a fixed order."""
    wallets: dict[str, Wallet] = {}
    for user_id in sorted(set(user_ids)):
        result = await db.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id, Wallet.currency == currency)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(user_id=user_id, currency=currency, balance=0, frozen_amount=0)
            db.add(wallet)
            await db.flush()
        wallets[user_id] = wallet
    return wallets


def milestones_complete(txn: EscrowTransaction) -> bool:
    """True when every milestone is done; a contract without milestones counts as done."""
    return all(m.is_completed for m in txn.milestones)


def fees_for_share(txn: EscrowTransaction, gross: int) -> FeeBreakdown:
    """Fees charged on the part of the escrow paid to the payee."""
    if gross <= 0:
        return FeeBreakdown(platform_fee=0, processing_fee=0, net_amount=0)
    if gross == txn.amount:
        return FeeBreakdown(
            platform_fee=txn.platform_fee,
            processing_fee=txn.processing_fee,
            net_amount=txn.amount - txn.platform_fee - txn.processing_fee,
        )
    return compute_fees(gross, txn.payer_tier, txn.payment_method)


# ---------------------------------------------------------------------------
# Creation and funding
# ---------------------------------------------------------------------------


async def open_escrow(
    db: AsyncSession,
    *,
    payer_id: str,
    payee_id: str,
    amount: int,
    currency: str = "USD",
    payer_tier: str = "standard",
    payment_method: str = "credit_card",
    milestones: list[str] | None = None,
    auto_release_date: datetime | None = None,
    release_on_completion: bool = False,
    contract_ref: str | None = None,
    title: str | None = None,
) -> EscrowTransaction:
    """Create a PENDING transaction with fees quoted by the fee calculator."""
    if payer_id == payee_id:
        raise ValidationError("Payer and payee must be different users")
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")
    fees = compute_fees(amount, payer_tier, payment_method)

    txn = EscrowTransaction(
        payer_id=payer_id,
        payee_id=payee_id,
        amount=amount,
        currency=currency.upper(),
        status=EscrowStatus.PENDING.value,
        payer_tier=payer_tier,
        payment_method=payment_method,
        platform_fee=fees.platform_fee,
        processing_fee=fees.processing_fee,
        auto_release_date=auto_release_date,
        release_on_completion=release_on_completion,
        contract_ref=contract_ref,
        title=title,
        milestones=[
            EscrowMilestone(position=i, title=name) for i, name in enumerate(milestones or [])
        ],
    )
    db.add(txn)
    await db.flush()

    log_audit(
        db,
        action="escrow.open",
        entity_type="escrow_transaction",
        entity_id=txn.id,
        user_id=payer_id,
        details={
            "amount": amount,
            "currency": txn.currency,
            "platform_fee": fees.platform_fee,
            "processing_fee": fees.processing_fee,
        },
    )
    return txn


async def lock(
    db: AsyncSession,
    txn_id: int,
    *,
    actor_id: str | None = None,
    from_wallet: bool = False,
    now: datetime | None = None,
) -> EscrowTransaction:
    """PENDING -> ESCROWED; the amount becomes frozen on the payer's wallet.

    Funds arrive settled from the payment processor unless ``from_wallet`` is
    set, in which case they are taken from the payer's available balance.
    A repeated settlement for an already ESCROWED transaction is a no-op.
    """
    now = now or utcnow()
    txn = await get_transaction_for_update(db, txn_id)
    if txn.status == EscrowStatus.ESCROWED:
        return txn
    if txn.status != EscrowStatus.PENDING:
        raise InvalidStateTransition(txn.status, "lock", actor_id)

    wallets = await _lock_wallets(db, txn.currency, txn.payer_id)
    payer = wallets[txn.payer_id]
    if from_wallet:
        if payer.balance < txn.amount:
            raise ValidationError("Insufficient available balance to fund escrow")
        payer.balance -= txn.amount
    payer.frozen_amount += txn.amount

    txn.status = EscrowStatus.ESCROWED.value
    txn.funded_at = now
    await db.flush()

    log_audit(
        db,
        action="escrow.lock",
        entity_type="escrow_transaction",
        entity_id=txn.id,
        user_id=actor_id or SYSTEM_ACTOR,
        details={"amount": txn.amount, "from_wallet": from_wallet},
    )
    queue_notification(
        db,
        user_id=txn.payee_id,
        type=NotificationType.ESCROW_FUNDED,
        title="Escrow funded",
        message=f"{txn.amount} {txn.currency} is now held in escrow for transaction {txn.id}",
        data={"escrow_transaction_id": txn.id},
    )
    logger.info("Escrow %d funded: %d %s frozen for %s", txn.id, txn.amount, txn.currency, txn.payer_id)
    return txn


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


async def _settle(
    db: AsyncSession,
    txn: EscrowTransaction,
    *,
    action: str,
    actor_id: str | None,
    payee_gross: int,
    payer_refund: int,
    target: EscrowStatus,
    now: datetime,
) -> EscrowTransaction:
    if payee_gross < 0 or payer_refund < 0 or payee_gross + payer_refund != txn.amount:
        raise ValidationError(
            f"Settlement split {payee_gross}/{payer_refund} does not add up to {txn.amount}"
        )

    wallets = await _lock_wallets(db, txn.currency, txn.payer_id, txn.payee_id)
    payer = wallets[txn.payer_id]
    payee = wallets[txn.payee_id]
    if payer.frozen_amount < txn.amount:
        raise Unexpected(f"Frozen balance of {txn.payer_id} is below escrow {txn.id}")

    fees = fees_for_share(txn, payee_gross)
    from_status = txn.status

    payer.frozen_amount -= txn.amount
    payer.balance += payer_refund
    payee.balance += fees.net_amount

    txn.status = target.value
    txn.released_amount = payee_gross
    txn.refunded_amount = payer_refund
    if target == EscrowStatus.COMPLETED:
        txn.completed_at = now
    else:
        txn.refunded_at = now
    await db.flush()

    log_audit(
        db,
        action=action,
        entity_type="escrow_transaction",
        entity_id=txn.id,
        user_id=actor_id or SYSTEM_ACTOR,
        details={
            "from_status": from_status,
            "to_status": target.value,
            "amount": txn.amount,
            "payee_gross": payee_gross,
            "payee_net": fees.net_amount,
            "platform_fee": fees.platform_fee,
            "processing_fee": fees.processing_fee,
            "payer_refund": payer_refund,
        },
    )
    if fees.net_amount > 0:
        queue_notification(
            db,
            user_id=txn.payee_id,
            type=NotificationType.PAYMENT_RECEIVED,
            title="Escrow funds released",
            message=f"{fees.net_amount} {txn.currency} released from transaction {txn.id}",
            data={"escrow_transaction_id": txn.id, "amount": fees.net_amount},
        )
    if payer_refund > 0:
        queue_notification(
            db,
            user_id=txn.payer_id,
            type=NotificationType.ESCROW_REFUNDED,
            title="Escrow refunded",
            message=f"{payer_refund} {txn.currency} returned from transaction {txn.id}",
            data={"escrow_transaction_id": txn.id, "amount": payer_refund},
        )
    logger.info(
        "Escrow %d %s -> %s (payee net %d, payer refund %d)",
        txn.id, from_status, target.value, fees.net_amount, payer_refund,
    )
    return txn


def _share(amount: int | None, total: int) -> int:
    if amount is None:
        return total
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= total:
        raise ValidationError(f"Amount must be between 1 and {total}")
    return amount


async def release(
    db: AsyncSession,
    txn_id: int,
    *,
    actor_id: str | None = None,
    amount: int | None = None,
    override: bool = False,
    via_resolution: bool = False,
    now: datetime | None = None,
) -> EscrowTransaction:
    """ESCROWED -> COMPLETED, paying the payee net of fees.

    Requires every milestone complete (or a payer override) and no active
    dispute. A partial ``amount`` pays that share to the payee and returns
    the remainder to the payer. Releasing an already COMPLETED transaction
    is a no-op. ``via_resolution`` is the dispute-resolution path: it may
    start from DISPUTED and skips the milestone requirement.
    """
    now = now or utcnow()
    txn = await get_transaction_for_update(db, txn_id)
    if txn.status == EscrowStatus.COMPLETED:
        return txn

    if txn.status == EscrowStatus.DISPUTED and not via_resolution:
        if await has_active_dispute(db, txn.id):
            raise DisputeBlocksRelease(f"Escrow {txn.id} has an open dispute")
        raise InvalidStateTransition(txn.status, "release", actor_id)
    if txn.status not in (EscrowStatus.ESCROWED, EscrowStatus.DISPUTED):
        raise InvalidStateTransition(txn.status, "release", actor_id)
    if await has_active_dispute(db, txn.id):
        raise DisputeBlocksRelease(f"Escrow {txn.id} has an open dispute")

    if not via_resolution and not milestones_complete(txn):
        if override and actor_id != txn.payer_id:
            raise Forbidden("Only the payer can override incomplete milestones")
        if not override:
            raise InvalidStateTransition(
                txn.status, "release", actor_id, detail="milestones incomplete"
            )

    payee_gross = _share(amount, txn.amount)
    return await _settle(
        db,
        txn,
        action="escrow.release",
        actor_id=actor_id,
        payee_gross=payee_gross,
        payer_refund=txn.amount - payee_gross,
        target=EscrowStatus.COMPLETED,
        now=now,
    )


async def refund(
    db: AsyncSession,
    txn_id: int,
    *,
    actor_id: str | None = None,
    amount: int | None = None,
    now: datetime | None = None,
) -> EscrowTransaction:
    """ESCROWED or DISPUTED -> REFUNDED, returning funds to the payer.

    A partial ``amount`` refunds that share; the remainder goes to the payee
    net of fees. Refunding an already REFUNDED transaction is a no-op.
    """
    now = now or utcnow()
    txn = await get_transaction_for_update(db, txn_id)
    if txn.status == EscrowStatus.REFUNDED:
        return txn
    if txn.status not in FROZEN_STATUSES:
        raise InvalidStateTransition(txn.status, "refund", actor_id)
    if await has_active_dispute(db, txn.id):
        raise DisputeBlocksRelease(f"Escrow {txn.id} has an open dispute")

    payer_refund = _share(amount, txn.amount)
    return await _settle(
        db,
        txn,
        action="escrow.refund",
        actor_id=actor_id,
        payee_gross=txn.amount - payer_refund,
        payer_refund=payer_refund,
        target=EscrowStatus.REFUNDED,
        now=now,
    )


async def settle(
    db: AsyncSession,
    txn_id: int,
    *,
    actor_id: str | None,
    payee_amount: int,
    payer_amount: int,
    now: datetime | None = None,
) -> EscrowTransaction:
    """Split the escrow between payee and payer as decided externally."""
    now = now or utcnow()
    txn = await get_transaction_for_update(db, txn_id)
    if txn.status not in FROZEN_STATUSES:
        raise InvalidStateTransition(txn.status, "settle", actor_id)
    if await has_active_dispute(db, txn.id):
        raise DisputeBlocksRelease(f"Escrow {txn.id} has an open dispute")

    target = EscrowStatus.COMPLETED if payee_amount > 0 else EscrowStatus.REFUNDED
    return await _settle(
        db,
        txn,
        action="escrow.settle",
        actor_id=actor_id,
        payee_gross=payee_amount,
        payer_refund=payer_amount,
        target=target,
        now=now,
    )


async def mark_disputed(
    db: AsyncSession, txn_id: int, *, actor_id: str | None = None
) -> EscrowTransaction:
    """ESCROWED -> DISPUTED; funds stay frozen. Already DISPUTED is a no-op."""
    txn = await get_transaction_for_update(db, txn_id)
    if txn.status == EscrowStatus.DISPUTED:
        return txn
    if txn.status != EscrowStatus.ESCROWED:
        raise InvalidStateTransition(txn.status, "dispute", actor_id)

    txn.status = EscrowStatus.DISPUTED.value
    await db.flush()
    log_audit(
        db,
        action="escrow.dispute",
        entity_type="escrow_transaction",
        entity_id=txn.id,
        user_id=actor_id or SYSTEM_ACTOR,
    )
    return txn


async def auto_release_if_eligible(db: AsyncSession, txn_id: int, now: datetime) -> bool:
    """Release when due, fully delivered and undisputed; otherwise do nothing."""
    txn = await get_transaction_for_update(db, txn_id)
    if txn.status != EscrowStatus.ESCROWED:
        return False
    due = txn.release_on_completion or (
        txn.auto_release_date is not None and now >= txn.auto_release_date
    )
    if not due or not milestones_complete(txn):
        return False
    if await has_active_dispute(db, txn.id):
        return False

    await release(db, txn.id, actor_id=None, now=now)
    return True


async def complete_milestone(
    db: AsyncSession,
    txn_id: int,
    milestone_id: int,
    *,
    actor_id: str,
    now: datetime | None = None,
) -> tuple[EscrowTransaction, EscrowMilestone, bool]:
    """Mark a milestone complete; returns (txn, milestone, newly_completed)."""
    now = now or utcnow()
    txn = await get_transaction_for_update(db, txn_id)
    if actor_id not in (txn.payer_id, txn.payee_id):
        raise Forbidden("Only the contract parties can update milestones")

    milestone = next((m for m in txn.milestones if m.id == milestone_id), None)
    if milestone is None:
        raise NotFound(f"Milestone {milestone_id} not found on escrow {txn_id}")
    if milestone.is_completed:
        return txn, milestone, False
    if txn.status not in (EscrowStatus.PENDING, *FROZEN_STATUSES):
        raise InvalidStateTransition(txn.status, "complete_milestone", actor_id)

    milestone.is_completed = True
    milestone.completed_at = now
    milestone.completed_by = actor_id
    await db.flush()

    log_audit(
        db,
        action="escrow.milestone_complete",
        entity_type="escrow_transaction",
        entity_id=txn.id,
        user_id=actor_id,
        details={"milestone_id": milestone.id, "title": milestone.title},
    )
    return txn, milestone, True
