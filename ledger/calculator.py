"""Fixed 10/70/20 commission split.

The member and creator shares are exact products of the sale amount; the
platform share takes whatever remains so the three always add back up to
the sale amount.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from pydantic import BaseModel

from .errors import InvalidAmount, InvariantViolation
from .models import BillingPeriod
from .settings import settings

MEMBER_RATE = Decimal("0.10")
CREATOR_RATE = Decimal("0.70")
PLATFORM_RATE = Decimal("0.20")

ROUNDING_TOLERANCE = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


class CommissionSplit(BaseModel):
    sale_amount: Decimal
    member_share: Decimal
    creator_share: Decimal
    platform_share: Decimal

    @property
    def total(self) -> Decimal:
        return self.member_share + self.creator_share + self.platform_share


def to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmount(f"Sale amount must be a number, got {amount!r}")
    if isinstance(amount, Decimal):
        value = amount
    else:
        try:
            value = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError) as e:
            raise InvalidAmount(f"Sale amount must be a number, got {amount!r}") from e
    if not value.is_finite():
        raise InvalidAmount("Sale amount must be a finite number")
    return value


def calculate_split(sale_amount: Amount, max_amount: Optional[Decimal] = None) -> CommissionSplit:
    """Split a sale into member (10%), creator (70%) and platform (20%) shares.

    Raises:
        InvalidAmount: negative, non-finite, non-numeric, or above the ceiling.
    """
    amount = to_decimal(sale_amount)
    ceiling = settings.max_sale_amount if max_amount is None else max_amount

    if amount < 0:
        raise InvalidAmount("Sale amount cannot be negative")
    if amount > ceiling:
        raise InvalidAmount(f"Sale amount exceeds maximum allowed ({ceiling})")

    member_share = amount * MEMBER_RATE
    creator_share = amount * CREATOR_RATE
    # Platform absorbs the remainder
    platform_share = amount - member_share - creator_share

    split = CommissionSplit(
        sale_amount=amount,
        member_share=member_share,
        creator_share=creator_share,
        platform_share=platform_share,
    )
    if abs(split.total - amount) > ROUNDING_TOLERANCE:
        raise InvariantViolation(
            f"Split {split.total} does not match sale amount {amount}"
        )
    return split


def normalize_billing_period(period: Optional[str]) -> Optional[BillingPeriod]:
    if not period:
        return None
    normalized = period.lower().strip()
    if "month" in normalized:
        return BillingPeriod.MONTHLY
    if "annual" in normalized or "year" in normalized:
        return BillingPeriod.ANNUAL
    if "lifetime" in normalized or "forever" in normalized:
        return BillingPeriod.LIFETIME
    return None


def calculate_monthly_value(amount: Decimal, billing_period: Optional[BillingPeriod]) -> Optional[Decimal]:
    """Projected monthly value: annual plans are spread over 12 months,
    lifetime and one-time purchases have none."""
    if billing_period == BillingPeriod.MONTHLY:
        return amount
    if billing_period == BillingPeriod.ANNUAL:
        return (amount / 12).quantize(Decimal("0.01"))
    return None
