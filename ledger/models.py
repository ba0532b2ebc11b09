from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class MemberOrigin(str, Enum):
    ORGANIC = "organic"
    REFERRED = "referred"


class PaymentType(str, Enum):
    INITIAL = "initial"
    RECURRING = "recurring"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


class BonusStatus(str, Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    PAID = "paid"
    REVOKED = "revoked"


class BonusType(str, Enum):
    FIXED = "fixed"
    MATCHED = "matched"
    PERCENTAGE = "percentage"


class PaymentStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class RefundStatus(str, Enum):
    REVERSED = "reversed"
    NOT_FOUND = "not_found"
    ALREADY_REVERSED = "already_reversed"


class RankMetric(str, Enum):
    LIFETIME_EARNINGS = "lifetime_earnings"
    TOTAL_REFERRALS = "total_referrals"
    WINDOW_EARNINGS = "window_earnings"


class MemberTier(str, Enum):
    UNRANKED = "unranked"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


GLOBAL_SCOPE = "global"


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------

class TierThresholds(BaseModel):
    bronze: int = 3
    silver: int = 10
    gold: int = 25
    platinum: int = 100

    def tier_for(self, total_referred: int) -> MemberTier:
        if total_referred >= self.platinum:
            return MemberTier.PLATINUM
        if total_referred >= self.gold:
            return MemberTier.GOLD
        if total_referred >= self.silver:
            return MemberTier.SILVER
        if total_referred >= self.bronze:
            return MemberTier.BRONZE
        return MemberTier.UNRANKED


class Creator(BaseModel):
    id: str
    name: str = "Community"
    tier_thresholds: TierThresholds = Field(default_factory=TierThresholds)
    total_revenue: Decimal = Decimal("0")
    monthly_revenue: Decimal = Decimal("0")
    total_referrals: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Member(BaseModel):
    id: str
    user_id: str
    creator_id: str
    referral_code: str
    origin: MemberOrigin = MemberOrigin.ORGANIC
    # Weak back-reference, lookup only
    referred_by: Optional[str] = None
    lifetime_earnings: Decimal = Decimal("0")
    monthly_earnings: Decimal = Decimal("0")
    total_referred: int = 0
    monthly_referred: int = 0
    first_referral_bonus_earned: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Commission(BaseModel):
    id: str = Field(default_factory=new_id)
    payment_id: str = Field(..., description="External payment id, the idempotency key")
    member_id: str
    creator_id: str
    referred_member_id: str
    sale_amount: Decimal
    member_share: Decimal
    creator_share: Decimal
    platform_share: Decimal
    payment_type: PaymentType
    status: CommissionStatus = CommissionStatus.PAID
    billing_period: Optional[BillingPeriod] = None
    monthly_value: Optional[Decimal] = None
    refunded_amount: Decimal = Decimal("0")
    flagged_for_review: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class Refund(BaseModel):
    refund_id: str
    payment_id: str
    commission_id: str
    amount: Decimal
    member_share_reversed: Decimal
    creator_share_reversed: Decimal
    platform_share_reversed: Decimal
    referral_reversed: bool = False
    in_period: bool = True
    reason: str = "refund_requested"
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class AttributionClick(BaseModel):
    id: str = Field(default_factory=new_id)
    referral_code: str
    fingerprint: Optional[str] = None
    ip_hash: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    converted: bool = False
    converted_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_valid_at(self, when: datetime) -> bool:
        return self.created_at <= when < self.expires_at


class DeviceSighting(BaseModel):
    member_id: str
    fingerprint: Optional[str] = None
    ip_hash: Optional[str] = None
    seen_at: datetime = Field(default_factory=utcnow)


class FirstReferralBonus(BaseModel):
    id: str = Field(default_factory=new_id)
    member_id: str
    triggering_commission_id: str
    amount: Decimal
    bonus_type: BonusType = BonusType.FIXED
    status: BonusStatus = BonusStatus.PENDING_CONFIRMATION
    eligible_at: datetime
    confirm_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SnapshotRow(BaseModel):
    scope: str
    metric: RankMetric
    member_id: str
    value: Decimal
    rank: int
    position: int
    member_created_at: datetime
    generated_at: datetime


# ---------------------------------------------------------------------------
# Events and results
# ---------------------------------------------------------------------------

class PaymentEvent(BaseModel):
    payment_id: str = Field(..., description="External payment id, used as idempotency key")
    creator_id: str
    member_id: str = Field(..., description="The paying member")
    user_id: Optional[str] = None
    username: Optional[str] = None
    amount: Decimal
    billing_period: Optional[str] = None
    referral_code: Optional[str] = None
    click_based: bool = True
    fingerprint: Optional[str] = None
    ip_hash: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "payment_id": "pay_123",
            "creator_id": "creator_1",
            "member_id": "member_42",
            "user_id": "user_42",
            "amount": "49.99",
            "billing_period": "monthly",
            "referral_code": "MIKE-A2X9K7",
        }
    })


class RefundEvent(BaseModel):
    refund_id: str
    payment_id: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class PaymentResult(BaseModel):
    status: PaymentStatus
    commission_id: Optional[str] = None
    reason: Optional[str] = None


class RefundResult(BaseModel):
    status: RefundStatus
    commission_id: Optional[str] = None
    member_share_reversed: Optional[Decimal] = None
    reason: Optional[str] = None


class CreatorRequest(BaseModel):
    creator_id: str
    name: str = "Community"
    tier_thresholds: Optional[TierThresholds] = None


class MemberRequest(BaseModel):
    creator_id: str
    member_id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    referred_by: Optional[str] = None


class ClickRequest(BaseModel):
    referral_code: str
    fingerprint: Optional[str] = None
    ip_address: Optional[str] = None


class ParkedEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: str
    payload: dict
    reason: str
    parked_at: datetime = Field(default_factory=utcnow)


class ReviewItem(BaseModel):
    payment_id: str
    member_id: str
    score: int
    level: str
    triggered_rules: list[str]
    blocked: bool
    created_at: datetime = Field(default_factory=utcnow)


class BonusStatusView(BaseModel):
    has_bonus: bool
    bonus: Optional[FirstReferralBonus] = None
    eligible_for_bonus: bool
    potential_amount: Decimal


class RealtimeRank(BaseModel):
    member_id: str
    scope: str
    metric: RankMetric
    value: Decimal
    rank: int
    position: int


class LeaderboardEntry(BaseModel):
    member_id: str
    value: Decimal
    rank: int
    position: int


class Leaderboard(BaseModel):
    scope: str
    metric: RankMetric
    entries: list[LeaderboardEntry]
    generated_at: Optional[datetime] = None
    stale: bool = True


class MemberStats(BaseModel):
    member_id: str
    creator_id: str
    referral_code: str
    origin: MemberOrigin
    lifetime_earnings: Decimal
    monthly_earnings: Decimal
    total_referred: int
    monthly_referred: int
    tier: MemberTier
    bonus: BonusStatusView
    global_referrals_rank: Optional[RealtimeRank] = None
    community_referrals_rank: Optional[RealtimeRank] = None
    global_earnings_rank: Optional[RealtimeRank] = None
    quarantined: bool = False


class CounterDrift(BaseModel):
    record_type: str
    record_id: str
    field: str
    cached: str
    actual: str


class ReconciliationReport(BaseModel):
    members_checked: int = 0
    creators_checked: int = 0
    corrections: list[CounterDrift] = Field(default_factory=list)
    quarantined: list[str] = Field(default_factory=list)
    released: list[str] = Field(default_factory=list)
