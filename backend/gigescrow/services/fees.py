"""Fee calculator: pure integer arithmetic on minor currency units.

Rates are expressed in basis points and every fee is truncated toward zero,
so quoting an escrow and charging it later always agree to the cent.
"""

from dataclasses import dataclass
from enum import StrEnum

from gigescrow.services.errors import ValidationError

BPS_DENOMINATOR = 10_000


class PayerTier(StrEnum):
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class PaymentMethod(StrEnum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"


PLATFORM_FEE_BPS: dict[PayerTier, int] = {
    PayerTier.STANDARD: 500,  # 5%
    PayerTier.PREMIUM: 350,  # 3.5%
    PayerTier.ENTERPRISE: 250,  # 2.5%
}

PROCESSING_FEE_BPS: dict[PaymentMethod, int] = {
    PaymentMethod.CREDIT_CARD: 290,  # 2.9%
    PaymentMethod.BANK_TRANSFER: 80,  # 0.8%
    PaymentMethod.DIGITAL_WALLET: 250,  # 2.5%
}


@dataclass(frozen=True)
class FeeBreakdown:
    platform_fee: int
    processing_fee: int
    net_amount: int

    @property
    def total_fees(self) -> int:
        return self.platform_fee + self.processing_fee


def parse_tier(value: str) -> PayerTier:
    try:
        return PayerTier(value)
    except ValueError:
        raise ValidationError(f"Unknown payer tier: {value!r}") from None


def parse_method(value: str) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"Unknown payment method: {value!r}") from None


def _apply_bps(amount: int, bps: int) -> int:
    return amount * bps // BPS_DENOMINATOR


def compute_fees(amount: int, payer_tier: str, payment_method: str) -> FeeBreakdown:
    """Split ``amount`` into platform fee, processing fee and net payout.

    ``platform_fee + processing_fee + net_amount == amount`` holds for every
    valid input.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be an integer number of minor units")
    if amount <= 0:
        raise ValidationError("Amount must be positive")

    tier = parse_tier(payer_tier)
    method = parse_method(payment_method)

    platform_fee = _apply_bps(amount, PLATFORM_FEE_BPS[tier])
    processing_fee = _apply_bps(amount, PROCESSING_FEE_BPS[method])
    return FeeBreakdown(
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        net_amount=amount - platform_fee - processing_fee,
    )
