"""Payment processor callbacks. Authenticated by the shared internal token."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.api.escrow import escrow_response
from gigescrow.api.schemas import EscrowResponse, PaymentFailedEvent, PaymentSettledEvent
from gigescrow.core.deps import get_db, get_orchestrator
from gigescrow.core.security import require_internal_token
from gigescrow.services.orchestrator import EscrowDisputeOrchestrator

router = APIRouter(
    prefix="/internal/payments",
    tags=["internal"],
    dependencies=[Depends(require_internal_token)],
)


@router.post("/settled", response_model=EscrowResponse)
async def payment_settled(
    body: PaymentSettledEvent,
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    """Funds captured by the processor: PENDING -> ESCROWED. Replays are no-ops."""
    txn = await orchestrator.fund_escrow(db, body.escrow_transaction_id)
    return escrow_response(txn)


@router.post("/failed", response_model=EscrowResponse)
async def payment_failed(
    body: PaymentFailedEvent,
    db: AsyncSession = Depends(get_db),
    orchestrator: EscrowDisputeOrchestrator = Depends(get_orchestrator),
):
    txn = await orchestrator.payment_failed(db, body.escrow_transaction_id, body.reason)
    return escrow_response(txn)
