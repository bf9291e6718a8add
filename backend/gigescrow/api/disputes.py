"""Dispute API endpoints: open a case, message/evidence trail, admin workflow."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.api.schemas import (
    CreateDisputeRequest,
    CreateDisputeResponse,
    DisputeEvidenceResponse,
    DisputeMessageCreate,
    DisputeMessageResponse,
    DisputeResponse,
    DisputeSummary,
    EvidenceItem,
    ResolveDisputeRequest,
)
from gigescrow.core.config import settings
from gigescrow.core.deps import get_db, get_orchestrator
from gigescrow.core.rate_limit import limiter
from gigescrow.core.security import get_current_caller
from gigescrow.models.dispute import Dispute
from gigescrow.services import disputes as dispute_svc
from gigescrow.services.dispute_state_machine import Actor, get_available_actions
from gigescrow.services.disputes import EvidenceInput
from gigescrow.services.errors import Forbidden
from gigescrow.services.orchestrator import Caller, EscrowDisputeOrchestrator
from gigescrow.services.orchestrator import CreateDisputeRequest as CreateDisputeCommand

router = APIRouter(prefix="/disputes", tags=["disputes"])


def _to_evidence(item: EvidenceItem) -> EvidenceInput:
    return EvidenceInput(
        type=item.type,
        filename=item.filename,
        url=item.url,
        size=item.size,
        mime_type=item.mime_type,
    )


def _dispute_response(dispute: Dispute, caller: Caller) -> DisputeResponse:
    resp = DisputeResponse.model_validate(dispute)
    actor = Actor.ADMIN if caller.is_admin else Actor.PARTY
    resp.available_actions = get_available_actions(dispute.status, actor)
    return resp


@router.post("/create", response_model=CreateDisputeResponse)
@limiter.limit(settings.rate_limit_disputes)
async def create_dispute(
    request: Request,
    body: CreateDisputeRequest,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Open a dispute on an escrow transaction the caller is party to."""
    if body.user_id != caller.user_id:
        raise Forbidden("userId does not match the authenticated caller")

    dispute = await orchestrator.create_dispute(
        db,
        caller,
        CreateDisputeCommand(
            escrow_transaction_id=body.escrow_transaction_id,
            type=body.type,
            reason=body.reason,
            evidence=[_to_evidence(item) for item in body.evidence],
        ),
    )
    return CreateDisputeResponse(dispute=DisputeSummary.model_validate(dispute))


@router.get("", response_model=list[DisputeResponse])
async def list_my_disputes(
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    disputes = await dispute_svc.list_for_user(db, caller.user_id)
    return [_dispute_response(d, caller) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    dispute = await orchestrator.get_dispute(db, caller, dispute_id)
    return _dispute_response(dispute, caller)


@router.get("/{dispute_id}/messages", response_model=list[DisputeMessageResponse])
async def list_messages(
    dispute_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.get_dispute(db, caller, dispute_id)  # access check
    messages = await dispute_svc.list_messages(db, dispute_id)
    return [DisputeMessageResponse.model_validate(m) for m in messages]


@router.post("/{dispute_id}/messages", response_model=DisputeMessageResponse, status_code=201)
async def add_message(
    dispute_id: int,
    body: DisputeMessageCreate,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    message = await orchestrator.add_message(db, caller, dispute_id, body.content)
    return DisputeMessageResponse.model_validate(message)


@router.get("/{dispute_id}/evidence", response_model=list[DisputeEvidenceResponse])
async def list_evidence(
    dispute_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.get_dispute(db, caller, dispute_id)  # access check
    evidence = await dispute_svc.list_evidence(db, dispute_id)
    return [DisputeEvidenceResponse.model_validate(e) for e in evidence]


@router.post("/{dispute_id}/evidence", response_model=DisputeEvidenceResponse, status_code=201)
async def add_evidence(
    dispute_id: int,
    body: EvidenceItem,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Attach a file reference; the upload itself goes to object storage."""
    record = await orchestrator.add_evidence(db, caller, dispute_id, _to_evidence(body))
    return DisputeEvidenceResponse.model_validate(record)


@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def start_review(
    dispute_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    dispute = await orchestrator.start_review(db, caller, dispute_id)
    return _dispute_response(dispute, caller)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: int,
    body: ResolveDisputeRequest,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    dispute = await orchestrator.resolve_dispute(
        db,
        caller,
        dispute_id,
        body.outcome,
        description=body.description,
        payee_amount=body.payee_amount,
        payer_amount=body.payer_amount,
    )
    return _dispute_response(dispute, caller)


@router.post("/{dispute_id}/close", response_model=DisputeResponse)
async def close_dispute(
    dispute_id: int,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    dispute = await orchestrator.close_dispute(db, caller, dispute_id)
    return _dispute_response(dispute, caller)
