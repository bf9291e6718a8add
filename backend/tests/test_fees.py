"""Tests for the fee calculator: rates, truncation and conservation."""

import random

import pytest

from gigescrow.services.errors import ValidationError
from gigescrow.services.fees import PayerTier, PaymentMethod, compute_fees


class TestRates:
    def test_standard_credit_card(self):
        fees = compute_fees(100_000, "standard", "credit_card")
        assert fees.platform_fee == 5_000
        assert fees.processing_fee == 2_900
        assert fees.net_amount == 92_100
        assert fees.total_fees == 7_900

    def test_premium_bank_transfer(self):
        fees = compute_fees(100_000, "premium", "bank_transfer")
        assert fees.platform_fee == 3_500
        assert fees.processing_fee == 800

    def test_enterprise_digital_wallet(self):
        fees = compute_fees(100_000, "enterprise", "digital_wallet")
        assert fees.platform_fee == 2_500
        assert fees.processing_fee == 2_500

    def test_fees_truncate_toward_zero(self):
        # 5% of 999 = 49.95, 2.9% of 999 = 28.971
        fees = compute_fees(999, "standard", "credit_card")
        assert fees.platform_fee == 49
        assert fees.processing_fee == 28
        assert fees.net_amount == 922

    def test_smallest_amount_has_no_fees(self):
        fees = compute_fees(1, "standard", "credit_card")
        assert (fees.platform_fee, fees.processing_fee, fees.net_amount) == (0, 0, 1)

    def test_quote_is_deterministic(self):
        assert compute_fees(55_000, "premium", "credit_card") == compute_fees(
            55_000, "premium", "credit_card"
        )


class TestConservation:
    @pytest.mark.parametrize("tier", list(PayerTier))
    @pytest.mark.parametrize("method", list(PaymentMethod))
    def test_parts_add_up(self, tier, method):
        rng = random.Random(f"{tier}-{method}")
        for _ in range(500):
            amount = rng.randint(1, 10**12)
            fees = compute_fees(amount, tier, method)
            assert fees.platform_fee + fees.processing_fee + fees.net_amount == amount
            assert fees.platform_fee >= 0
            assert fees.processing_fee >= 0
            assert fees.net_amount > 0


class TestValidation:
    @pytest.mark.parametrize("amount", [0, -1, -50_000])
    def test_non_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            compute_fees(amount, "standard", "credit_card")

    @pytest.mark.parametrize("amount", [10.5, "100", None, True])
    def test_non_integer_amount(self, amount):
        with pytest.raises(ValidationError):
            compute_fees(amount, "standard", "credit_card")

    def test_unknown_tier(self):
        with pytest.raises(ValidationError, match="payer tier"):
            compute_fees(1_000, "gold", "credit_card")

    def test_unknown_method(self):
        with pytest.raises(ValidationError, match="payment method"):
            compute_fees(1_000, "standard", "cheque")

    def test_validation_error_is_not_retryable(self):
        with pytest.raises(ValidationError) as exc_info:
            compute_fees(0, "standard", "credit_card")
        assert exc_info.value.retryable is False
        assert exc_info.value.to_dict()["kind"] == "validation_error"
