from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.api.schemas import WalletResponse
from gigescrow.core.deps import get_db
from gigescrow.core.security import get_current_caller
from gigescrow.services import ledger
from gigescrow.services.orchestrator import Caller

router = APIRouter(tags=["wallet"])


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(
    currency: str = Query(default="USD", min_length=3, max_length=3),
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    """Available and frozen balance of the caller."""
    currency = currency.upper()
    wallet = await ledger.get_wallet(db, caller.user_id, currency)
    if wallet is None:
        return WalletResponse(user_id=caller.user_id, currency=currency, balance=0, frozen_amount=0)
    return WalletResponse.model_validate(wallet)
