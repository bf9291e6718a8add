"""Escrow API endpoints: open, inspect, release, refund, milestone updates."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.api.schemas import (
    CreateEscrowRequest,
    EscrowResponse,
    RefundEscrowRequest,
    ReleaseEscrowRequest,
)
from gigescrow.core.config import settings
from gigescrow.core.deps import get_db, get_orchestrator
from gigescrow.core.idempotency import check_idempotency, clear_idempotency
from gigescrow.core.rate_limit import limiter
from gigescrow.core.security import get_current_caller
from gigescrow.models.escrow import EscrowTransaction
from gigescrow.services.ledger import EscrowStatus
from gigescrow.services.milestones import completion_percent
from gigescrow.services.orchestrator import Caller, EscrowDisputeOrchestrator

router = APIRouter(prefix="/escrow", tags=["escrow"])


def escrow_response(txn: EscrowTransaction) -> EscrowResponse:
    resp = EscrowResponse.model_validate(txn)
    resp.completion_percent = completion_percent(txn)
    return resp


@router.post("", response_model=EscrowResponse, status_code=201)
async def open_escrow(
    body: CreateEscrowRequest,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Open a PENDING escrow with the caller as payer. Funding arrives from the processor."""
    txn = await orchestrator.open_escrow(
        db,
        caller,
        payee_id=body.payee_id,
        amount=body.amount,
        currency=body.currency,
        payer_tier=body.payer_tier,
        payment_method=body.payment_method,
        milestones=body.milestones,
        auto_release_date=body.auto_release_date,
        release_on_completion=body.release_on_completion,
        contract_ref=body.contract_ref,
        title=body.title,
    )
    return escrow_response(txn)


@router.get("/{txn_id}", response_model=EscrowResponse)
async def get_escrow(
    txn_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    txn = await orchestrator.get_escrow(db, caller, txn_id)
    return escrow_response(txn)


@router.post("/{txn_id}/fund", response_model=EscrowResponse)
async def fund_from_wallet(
    txn_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Fund a PENDING escrow from the payer's available wallet balance."""
    txn = await orchestrator.fund_escrow(db, txn_id, caller=caller, from_wallet=True)
    return escrow_response(txn)


@router.post("/{txn_id}/release", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def release_escrow(
    request: Request,
    txn_id: int,
    body: ReleaseEscrowRequest,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Release escrowed funds to the payee (payer or admin)."""
    key = f"escrow:release:{txn_id}:{caller.user_id}"
    if not await check_idempotency(key):
        # Duplicate click: answer with the finished release if there is one
        txn = await orchestrator.get_escrow(db, caller, txn_id)
        if txn.status == EscrowStatus.COMPLETED:
            return escrow_response(txn)

    try:
        txn = await orchestrator.release_escrow(
            db, caller, txn_id, amount=body.amount, override=body.override
        )
    except Exception:
        await clear_idempotency(key)
        raise
    return escrow_response(txn)


@router.post("/{txn_id}/refund", response_model=EscrowResponse)
@limiter.limit(settings.rate_limit_escrow)
async def refund_escrow(
    request: Request,
    txn_id: int,
    body: RefundEscrowRequest,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Return escrowed funds to the payer (payee or admin)."""
    txn = await orchestrator.refund_escrow(db, caller, txn_id, amount=body.amount)
    return escrow_response(txn)


@router.post("/{txn_id}/milestones/{milestone_id}/complete", response_model=EscrowResponse)
async def complete_milestone(
    txn_id: int,
    milestone_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    txn, _ = await orchestrator.complete_milestone(db, caller, txn_id, milestone_id)
    return escrow_response(txn)
