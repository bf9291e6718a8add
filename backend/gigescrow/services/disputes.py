"""Dispute case manager: opening cases, the message/evidence trail and resolution.

Functions here add and flush only; the orchestrator owns the unit of work.
The escrow transaction row is always locked before the dispute row, the same
order the ledger uses, so concurrent operations on one escrow serialise.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.core.config import settings
from gigescrow.db.base import utcnow
from gigescrow.models.dispute import Dispute, DisputeEvidence, DisputeMessage
from gigescrow.services import ledger
from gigescrow.services.agents import AssignmentPolicy
from gigescrow.services.audit import log_audit
from gigescrow.services.case_numbers import next_case_number
from gigescrow.services.dispute_state_machine import (
    RESOLUTION_DAYS,
    TERMINAL_STATUSES,
    Actor,
    DisputeAction,
    DisputeType,
    ResolutionOutcome,
    priority_for_amount,
    validate_transition,
)
from gigescrow.services.errors import (
    Conflict,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from gigescrow.services.notification import NotificationType, queue_notification

logger = logging.getLogger(__name__)

EVIDENCE_TYPES = frozenset({"document", "screenshot", "image", "video", "email", "other"})

ALLOWED_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "video/mp4",
    "video/avi",
})

MAX_REASON_LENGTH = 5000
MAX_MESSAGE_LENGTH = 5000


@dataclass(frozen=True)
class EvidenceInput:
    filename: str
    url: str = ""
    type: str = "document"
    size: int | None = None
    mime_type: str | None = None


def validate_evidence(item: EvidenceInput) -> None:
    if not item.filename or not item.filename.strip():
        raise ValidationError("Evidence filename is required")
    if item.type not in EVIDENCE_TYPES:
        raise ValidationError(f"Unknown evidence type: {item.type!r}")
    if item.size is not None and (item.size < 0 or item.size > settings.evidence_max_bytes):
        raise ValidationError(
            f"Evidence file exceeds {settings.evidence_max_bytes // (1024 * 1024)} MB"
        )
    if item.mime_type is not None and item.mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"File type not allowed: {item.mime_type}")


def _parse_type(value: str) -> DisputeType:
    try:
        return DisputeType(value)
    except ValueError:
        raise ValidationError(f"Unknown dispute type: {value!r}") from None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_dispute(db: AsyncSession, dispute_id: int) -> Dispute:
    dispute = await db.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFound(f"Dispute {dispute_id} not found")
    return dispute


async def get_dispute_for_update(db: AsyncSession, dispute_id: int) -> Dispute:
    result = await db.execute(
        select(Dispute)
        .where(Dispute.id == dispute_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound(f"Dispute {dispute_id} not found")
    return dispute


async def _lock_case(db: AsyncSession, dispute_id: int) -> Dispute:
    """Lock the escrow row, then the dispute row."""
    dispute = await get_dispute(db, dispute_id)
    await ledger.get_transaction_for_update(db, dispute.escrow_transaction_id)
    return await get_dispute_for_update(db, dispute_id)


def ensure_participant(dispute: Dispute, user_id: str, is_admin: bool) -> None:
    if is_admin:
        return
    if user_id not in (dispute.created_by, dispute.respondent):
        raise Forbidden("Not a party to this dispute")


async def list_messages(db: AsyncSession, dispute_id: int) -> list[DisputeMessage]:
    result = await db.execute(
        select(DisputeMessage)
        .where(DisputeMessage.dispute_id == dispute_id)
        .order_by(DisputeMessage.created_at, DisputeMessage.id)
    )
    return list(result.scalars().all())


async def list_evidence(db: AsyncSession, dispute_id: int) -> list[DisputeEvidence]:
    result = await db.execute(
        select(DisputeEvidence)
        .where(DisputeEvidence.dispute_id == dispute_id)
        .order_by(DisputeEvidence.id)
    )
    return list(result.scalars().all())


async def list_for_user(db: AsyncSession, user_id: str) -> list[Dispute]:
    result = await db.execute(
        select(Dispute)
        .where((Dispute.created_by == user_id) | (Dispute.respondent == user_id))
        .order_by(Dispute.created_at.desc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Opening a case
# ---------------------------------------------------------------------------


async def create_dispute(
    db: AsyncSession,
    *,
    caller_id: str,
    escrow_transaction_id: int,
    type: str,
    reason: str,
    evidence: list[EvidenceInput] | None = None,
    policy: AssignmentPolicy,
    admin_ids: list[str] | None = None,
    now: datetime | None = None,
) -> Dispute:
    """Open a dispute against an escrow transaction.

    Checks run in order: input, NotFound, Forbidden, Conflict. The dispute,
    its first message, its evidence, the DISPUTED flip of the escrow and the
    notifications are all added to the caller's unit of work.
    """
    now = now or utcnow()
    dispute_type = _parse_type(type)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to open a dispute")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"Reason is longer than {MAX_REASON_LENGTH} characters")
    evidence = list(evidence or [])
    for item in evidence:
        validate_evidence(item)

    txn = await ledger.get_transaction_for_update(db, escrow_transaction_id)
    if caller_id not in (txn.payer_id, txn.payee_id):
        raise Forbidden("Not a party to this escrow transaction")
    if await ledger.has_active_dispute(db, txn.id):
        raise Conflict(f"An active dispute already exists for escrow {txn.id}")
    if txn.status not in ledger.FROZEN_STATUSES:
        raise InvalidStateTransition(txn.status, "dispute", caller_id)

    priority = priority_for_amount(txn.amount)
    case_number, sequence = await next_case_number(db, now.year)
    agent = await policy.assign(db, priority, sequence)
    respondent = txn.payee_id if caller_id == txn.payer_id else txn.payer_id

    dispute = Dispute(
        case_number=case_number,
        type=dispute_type.value,
        priority=priority.value,
        amount=txn.amount,
        currency=txn.currency,
        reason=reason,
        created_by=caller_id,
        respondent=respondent,
        escrow_transaction_id=txn.id,
        expected_resolution=now + timedelta(days=RESOLUTION_DAYS[priority]),
        assigned_agent=agent,
        created_at=now,
        updated_at=now,
    )
    db.add(dispute)
    await db.flush()

    db.add(DisputeMessage(dispute_id=dispute.id, sender_id=caller_id, content=reason))
    for item in evidence:
        db.add(
            DisputeEvidence(
                dispute_id=dispute.id,
                type=item.type,
                filename=item.filename,
                url=item.url,
                size=item.size,
                mime_type=item.mime_type,
                uploaded_by=caller_id,
            )
        )
    await ledger.mark_disputed(db, txn.id, actor_id=caller_id)

    log_audit(
        db,
        action="dispute.create",
        entity_type="dispute",
        entity_id=dispute.id,
        user_id=caller_id,
        details={
            "case_number": case_number,
            "escrow_transaction_id": txn.id,
            "priority": priority.value,
            "assigned_agent": agent,
        },
    )

    subject = txn.title or "project"
    queue_notification(
        db,
        user_id=respondent,
        type=NotificationType.DISPUTE_CREATED,
        title="New dispute opened",
        message=f'Dispute {case_number} was opened for the transaction on "{subject}"',
        data={"dispute_id": dispute.id, "case_number": case_number},
    )
    for admin_id in admin_ids or []:
        queue_notification(
            db,
            user_id=admin_id,
            type=NotificationType.DISPUTE_ASSIGNED,
            title=f"New dispute assigned: {case_number}",
            message=f"{dispute_type.value} dispute over {txn.amount} {txn.currency}",
            data={"dispute_id": dispute.id, "assigned_agent": agent},
        )

    logger.info(
        "Dispute %s created for escrow %d (priority %s, agent %s)",
        case_number, txn.id, priority.value, agent,
    )
    return dispute


# ---------------------------------------------------------------------------
# Communication trail
# ---------------------------------------------------------------------------


async def add_message(
    db: AsyncSession,
    dispute_id: int,
    *,
    sender_id: str,
    content: str,
    is_admin: bool = False,
) -> DisputeMessage:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message is longer than {MAX_MESSAGE_LENGTH} characters")

    dispute = await get_dispute(db, dispute_id)
    ensure_participant(dispute, sender_id, is_admin)
    # Terminal cases only take record-keeping notes from admins
    if dispute.status in TERMINAL_STATUSES and not is_admin:
        raise InvalidStateTransition(dispute.status, "add_message", sender_id)

    message = DisputeMessage(
        dispute_id=dispute.id, sender_id=sender_id, content=content, is_from_admin=is_admin
    )
    db.add(message)
    await db.flush()

    for recipient in (dispute.created_by, dispute.respondent):
        if recipient == sender_id:
            continue
        queue_notification(
            db,
            user_id=recipient,
            type=NotificationType.DISPUTE_MESSAGE,
            title=f"New message on dispute {dispute.case_number}",
            message="The support team posted a new message" if is_admin
            else "The other party posted a new message",
            data={"dispute_id": dispute.id, "message_id": message.id},
        )
    logger.info("Message added to dispute %s by %s", dispute.case_number, sender_id)
    return message


async def add_evidence(
    db: AsyncSession,
    dispute_id: int,
    *,
    uploader_id: str,
    evidence: EvidenceInput,
    is_admin: bool = False,
) -> DisputeEvidence:
    """Attach evidence. Accepted in every state; after resolution it is record-only."""
    validate_evidence(evidence)
    dispute = await get_dispute(db, dispute_id)
    ensure_participant(dispute, uploader_id, is_admin)

    record = DisputeEvidence(
        dispute_id=dispute.id,
        type=evidence.type,
        filename=evidence.filename,
        url=evidence.url,
        size=evidence.size,
        mime_type=evidence.mime_type,
        uploaded_by=uploader_id,
        is_post_resolution=dispute.status in TERMINAL_STATUSES,
    )
    db.add(record)
    await db.flush()

    for recipient in (dispute.created_by, dispute.respondent):
        if recipient == uploader_id:
            continue
        queue_notification(
            db,
            user_id=recipient,
            type=NotificationType.DISPUTE_EVIDENCE,
            title=f"New evidence on dispute {dispute.case_number}",
            message=f"New evidence uploaded: {evidence.filename}",
            data={"dispute_id": dispute.id, "evidence_id": record.id},
        )
    logger.info("Evidence %s added to dispute %s", evidence.filename, dispute.case_number)
    return record


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


async def start_review(
    db: AsyncSession,
    dispute_id: int,
    *,
    actor_id: str,
    actor: str = Actor.ADMIN,
    now: datetime | None = None,
) -> Dispute:
    now = now or utcnow()
    dispute = await _lock_case(db, dispute_id)
    dispute.status = validate_transition(dispute.status, DisputeAction.START_REVIEW, actor).value
    dispute.reviewed_at = now
    await db.flush()

    log_audit(db, action="dispute.start_review", entity_type="dispute",
              entity_id=dispute.id, user_id=actor_id)
    for party in (dispute.created_by, dispute.respondent):
        queue_notification(
            db,
            user_id=party,
            type=NotificationType.DISPUTE_UNDER_REVIEW,
            title=f"Dispute {dispute.case_number} under review",
            message=f"{dispute.assigned_agent} is now reviewing your case",
            data={"dispute_id": dispute.id},
        )
    return dispute


async def resolve(
    db: AsyncSession,
    dispute_id: int,
    *,
    outcome: str,
    resolver_id: str,
    description: str | None = None,
    payee_amount: int | None = None,
    payer_amount: int | None = None,
    now: datetime | None = None,
) -> Dispute:
    """UNDER_REVIEW -> RESOLVED, then apply the outcome to the escrow.

    The dispute leaves the active set (and is flushed) before the ledger
    call, so the ledger's no-active-dispute precondition holds for the
    resolution path itself. Any ledger failure aborts the whole unit.
    """
    now = now or utcnow()
    try:
        resolution = ResolutionOutcome(outcome)
    except ValueError:
        raise ValidationError(f"Unknown resolution outcome: {outcome!r}") from None

    dispute = await _lock_case(db, dispute_id)
    new_status = validate_transition(dispute.status, DisputeAction.RESOLVE, Actor.ADMIN)

    if resolution == ResolutionOutcome.PARTIAL_SETTLEMENT:
        if payee_amount is None or payer_amount is None:
            raise ValidationError("Partial settlement requires payee and payer amounts")
        if payee_amount < 0 or payer_amount < 0 or payee_amount + payer_amount != dispute.amount:
            raise ValidationError(
                f"Settlement amounts must be non-negative and add up to {dispute.amount}"
            )

    dispute.status = new_status.value
    dispute.resolution_type = resolution.value
    dispute.resolution_description = description
    dispute.resolved_at = now
    dispute.resolved_by = resolver_id
    await db.flush()

    txn_id = dispute.escrow_transaction_id
    if resolution == ResolutionOutcome.FUNDS_RELEASED:
        txn = await ledger.release(db, txn_id, actor_id=resolver_id, via_resolution=True, now=now)
    elif resolution == ResolutionOutcome.REFUNDED:
        txn = await ledger.refund(db, txn_id, actor_id=resolver_id, now=now)
    else:
        txn = await ledger.settle(
            db, txn_id, actor_id=resolver_id,
            payee_amount=payee_amount, payer_amount=payer_amount, now=now,
        )
    dispute.resolution_payee_amount = txn.released_amount or 0
    dispute.resolution_payer_amount = txn.refunded_amount or 0
    await db.flush()

    log_audit(
        db,
        action="dispute.resolve",
        entity_type="dispute",
        entity_id=dispute.id,
        user_id=resolver_id,
        details={
            "outcome": resolution.value,
            "escrow_status": txn.status,
            "payee_amount": dispute.resolution_payee_amount,
            "payer_amount": dispute.resolution_payer_amount,
        },
    )
    for party in (dispute.created_by, dispute.respondent):
        queue_notification(
            db,
            user_id=party,
            type=NotificationType.DISPUTE_RESOLVED,
            title=f"Dispute {dispute.case_number} resolved",
            message=f"Outcome: {resolution.value}",
            data={"dispute_id": dispute.id, "outcome": resolution.value},
        )
    logger.info("Dispute %s resolved: %s", dispute.case_number, resolution.value)
    return dispute


async def close(
    db: AsyncSession,
    dispute_id: int,
    *,
    actor_id: str,
    actor: str = Actor.ADMIN,
    now: datetime | None = None,
) -> Dispute:
    now = now or utcnow()
    dispute = await _lock_case(db, dispute_id)
    dispute.status = validate_transition(dispute.status, DisputeAction.CLOSE, actor).value
    dispute.closed_at = now
    await db.flush()
    log_audit(db, action="dispute.close", entity_type="dispute",
              entity_id=dispute.id, user_id=actor_id)
    return dispute
