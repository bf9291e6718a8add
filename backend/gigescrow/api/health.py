from fastapi import APIRouter, Query

from gigescrow.api.schemas import FeeQuoteResponse
from gigescrow.services.fees import (
    PLATFORM_FEE_BPS,
    PROCESSING_FEE_BPS,
    compute_fees,
    parse_method,
    parse_tier,
)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/fees/quote", response_model=FeeQuoteResponse)
async def quote_fees(
    amount: int = Query(gt=0),
    payer_tier: str = Query(default="standard", alias="payerTier"),
    payment_method: str = Query(default="credit_card", alias="paymentMethod"),
) -> FeeQuoteResponse:
    """Fee quote computed by the same routine used at settlement."""
    fees = compute_fees(amount, payer_tier, payment_method)
    return FeeQuoteResponse(
        amount=amount,
        platform_fee_bps=PLATFORM_FEE_BPS[parse_tier(payer_tier)],
        processing_fee_bps=PROCESSING_FEE_BPS[parse_method(payment_method)],
        platform_fee=fees.platform_fee,
        processing_fee=fees.processing_fee,
        total_fees=fees.total_fees,
        net_amount=fees.net_amount,
    )
