"""
Unit Tests for the Commission Calculator

Tests cover:
1. The fixed 10/70/20 split
2. Exact sums with the platform share as the remainder
3. Rejection of invalid amounts
4. Billing period normalization and projected monthly value
"""

import pytest
from decimal import Decimal

from ledger.calculator import (
    MEMBER_RATE,
    CREATOR_RATE,
    PLATFORM_RATE,
    calculate_monthly_value,
    calculate_split,
    normalize_billing_period,
    to_decimal,
)
from ledger.errors import InvalidAmount
from ledger.models import BillingPeriod


class TestCommissionSplit:
    """Tests for the 10/70/20 split."""

    def test_rates_sum_to_one(self):
        """The three rates cover the whole sale."""
        assert MEMBER_RATE + CREATOR_RATE + PLATFORM_RATE == Decimal("1")

    def test_round_amount(self):
        """A round sale splits into round shares."""
        split = calculate_split(Decimal("100"))

        assert split.member_share == Decimal("10")
        assert split.creator_share == Decimal("70")
        assert split.platform_share == Decimal("20")

    def test_odd_cent_amount(self):
        """49.99 splits into 4.999 / 34.993 / 9.998 with nothing lost."""
        split = calculate_split("49.99")

        assert split.member_share == Decimal("4.999")
        assert split.creator_share == Decimal("34.993")
        assert split.platform_share == Decimal("9.998")
        assert split.total == Decimal("49.99")

    @pytest.mark.parametrize("amount", ["0.01", "0.03", "1.11", "19.99", "333.33", "999999.99"])
    def test_shares_always_sum_to_sale(self, amount):
        """Platform takes the remainder so the shares add back exactly."""
        split = calculate_split(amount)
        assert split.total == Decimal(amount)

    def test_zero_amount(self):
        """A zero sale produces zero shares."""
        split = calculate_split(0)

        assert split.member_share == 0
        assert split.creator_share == 0
        assert split.platform_share == 0

    def test_float_input_uses_its_text_value(self):
        """Floats are converted through str so 0.1 stays 0.1."""
        split = calculate_split(0.1)
        assert split.sale_amount == Decimal("0.1")
        assert split.member_share == Decimal("0.01")


class TestInvalidAmounts:
    """Tests for amounts that must be rejected."""

    def test_negative_amount_rejected(self):
        """Negative sales raise InvalidAmount."""
        with pytest.raises(InvalidAmount, match="negative"):
            calculate_split(Decimal("-1"))

    def test_non_numeric_rejected(self):
        """Text that is not a number raises InvalidAmount."""
        with pytest.raises(InvalidAmount):
            calculate_split("forty")

    def test_non_finite_rejected(self):
        """NaN and infinity raise InvalidAmount."""
        with pytest.raises(InvalidAmount):
            calculate_split(float("nan"))
        with pytest.raises(InvalidAmount):
            calculate_split(Decimal("Infinity"))

    def test_bool_rejected(self):
        """Booleans are not amounts even though they are ints."""
        with pytest.raises(InvalidAmount):
            to_decimal(True)

    def test_ceiling_enforced(self):
        """Amounts above the configured ceiling raise InvalidAmount."""
        assert calculate_split("100", max_amount=Decimal("100")).total == Decimal("100")
        with pytest.raises(InvalidAmount, match="maximum"):
            calculate_split("100.01", max_amount=Decimal("100"))


class TestBillingPeriods:
    """Tests for billing period helpers."""

    @pytest.mark.parametrize("raw,expected", [
        ("monthly", BillingPeriod.MONTHLY),
        ("Month", BillingPeriod.MONTHLY),
        ("annual", BillingPeriod.ANNUAL),
        ("yearly", BillingPeriod.ANNUAL),
        ("lifetime", BillingPeriod.LIFETIME),
        ("one_time", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        """Provider period strings map onto the known periods."""
        assert normalize_billing_period(raw) == expected

    def test_monthly_value(self):
        """Annual plans spread over twelve months, lifetime has no monthly value."""
        assert calculate_monthly_value(Decimal("49.99"), BillingPeriod.MONTHLY) == Decimal("49.99")
        assert calculate_monthly_value(Decimal("120"), BillingPeriod.ANNUAL) == Decimal("10.00")
        assert calculate_monthly_value(Decimal("99"), BillingPeriod.ANNUAL) == Decimal("8.25")
        assert calculate_monthly_value(Decimal("299"), BillingPeriod.LIFETIME) is None
        assert calculate_monthly_value(Decimal("10"), None) is None
