"""First-referral bonus lifecycle.

    pending_confirmation --(hold period elapsed)--> confirmed --(payout)--> paid
    pending_confirmation | confirmed --(originating refund)--> revoked

``paid`` and ``revoked`` are terminal. Every status change goes through
``BonusStateMachine.transition`` so no call site can bypass the table.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from .errors import BonusNotFoundError, InvalidStateTransitionError
from .logging_config import get_logger
from .models import (
    BonusStatus,
    BonusStatusView,
    BonusType,
    Commission,
    FirstReferralBonus,
    Member,
    PaymentType,
    utcnow,
)
from .settings import Settings, settings as default_settings
from .storage import InMemoryStorage, period_of

logger = get_logger(__name__)

TRANSITIONS: dict[BonusStatus, frozenset[BonusStatus]] = {
    BonusStatus.PENDING_CONFIRMATION: frozenset({BonusStatus.CONFIRMED, BonusStatus.REVOKED}),
    BonusStatus.CONFIRMED: frozenset({BonusStatus.PAID, BonusStatus.REVOKED}),
    BonusStatus.PAID: frozenset(),
    BonusStatus.REVOKED: frozenset(),
}


def can_transition(current: BonusStatus, target: BonusStatus) -> bool:
    return target in TRANSITIONS[current]


class BonusStateMachine:
    def __init__(self, store: InMemoryStorage, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings

    @property
    def bonus_type(self) -> BonusType:
        return BonusType(self.settings.bonus_type)

    def calculate_amount(self, member_share: Decimal) -> Decimal:
        if self.bonus_type == BonusType.MATCHED:
            return min(member_share, self.settings.bonus_max_amount).quantize(Decimal("0.01"))
        if self.bonus_type == BonusType.PERCENTAGE:
            amount = member_share * self.settings.bonus_percentage
            return min(amount, self.settings.bonus_max_amount).quantize(Decimal("0.01"))
        return self.settings.bonus_fixed_amount

    def is_eligible(self, referrer: Member, commission: Commission) -> bool:
        """``referrer`` must be the state before this commission's counters
        were applied."""
        if commission.payment_type != PaymentType.INITIAL:
            return False
        if referrer.total_referred != 0 or referrer.first_referral_bonus_earned:
            return False
        if self.store.get_bonus_for_member(referrer.id) is not None:
            return False
        return commission.member_share >= self.settings.bonus_min_commission

    def evaluate(
        self, referrer: Member, commission: Commission, now: Optional[datetime] = None
    ) -> Optional[FirstReferralBonus]:
        if not self.is_eligible(referrer, commission):
            return None
        now = now or utcnow()
        bonus = FirstReferralBonus(
            member_id=referrer.id,
            triggering_commission_id=commission.id,
            amount=self.calculate_amount(commission.member_share),
            bonus_type=self.bonus_type,
            eligible_at=now,
            confirm_at=now + timedelta(days=self.settings.bonus_hold_days),
        )
        with self.store.transaction():
            self.store.add_bonus(bonus)
            self.store.mark_bonus_earned(referrer.id)
        logger.info(
            "first_referral_bonus_created",
            member_id=referrer.id,
            bonus_id=bonus.id,
            amount=str(bonus.amount),
            confirm_at=bonus.confirm_at.isoformat(),
        )
        return bonus

    def transition(
        self,
        bonus: FirstReferralBonus,
        target: BonusStatus,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> FirstReferralBonus:
        if not can_transition(bonus.status, target):
            raise InvalidStateTransitionError(
                f"Cannot move bonus {bonus.id} from {bonus.status.value} to {target.value}"
            )
        now = now or utcnow()
        updates: dict = {"status": target}
        if target == BonusStatus.CONFIRMED:
            updates["confirmed_at"] = now
        elif target == BonusStatus.PAID:
            updates["paid_at"] = now
        elif target == BonusStatus.REVOKED:
            updates["revoked_at"] = now
            updates["revoke_reason"] = reason
        updated = bonus.model_copy(update=updates)
        self.store.update_bonus(updated)
        logger.info(
            "first_referral_bonus_transition",
            bonus_id=bonus.id,
            from_status=bonus.status.value,
            to_status=target.value,
        )
        return updated

    def get(self, bonus_id: str) -> FirstReferralBonus:
        bonus = self.store.get_bonus(bonus_id)
        if bonus is None:
            raise BonusNotFoundError(f"Bonus {bonus_id} not found")
        return bonus

    def confirm(self, bonus_id: str, now: Optional[datetime] = None) -> FirstReferralBonus:
        now = now or utcnow()
        with self.store.transaction():
            bonus = self.get(bonus_id)
            if bonus.status == BonusStatus.PENDING_CONFIRMATION and bonus.confirm_at > now:
                raise InvalidStateTransitionError(
                    f"Bonus {bonus_id} is held until {bonus.confirm_at.isoformat()}"
                )
            return self.transition(bonus, BonusStatus.CONFIRMED, now)

    def confirm_due(self, now: Optional[datetime] = None) -> list[FirstReferralBonus]:
        """Periodic sweep: confirm pending bonuses whose hold period has passed."""
        now = now or utcnow()
        confirmed = []
        with self.store.transaction():
            for bonus in self.store.list_bonuses(BonusStatus.PENDING_CONFIRMATION):
                if bonus.confirm_at <= now:
                    confirmed.append(self.transition(bonus, BonusStatus.CONFIRMED, now))
        logger.info("first_referral_bonuses_confirmed", count=len(confirmed))
        return confirmed

    def mark_paid(self, bonus_id: str, now: Optional[datetime] = None) -> FirstReferralBonus:
        """Pay out a confirmed bonus and credit it to the member's earnings."""
        now = now or utcnow()
        with self.store.transaction():
            bonus = self.get(bonus_id)
            paid = self.transition(bonus, BonusStatus.PAID, now)
            in_period = period_of(now) == self.store.current_period
            self.store.increment_member_counters(
                bonus.member_id,
                earnings=bonus.amount,
                monthly_earnings=bonus.amount if in_period else Decimal("0"),
            )
        return paid

    def pay_confirmed(self, now: Optional[datetime] = None) -> list[FirstReferralBonus]:
        now = now or utcnow()
        paid = []
        for bonus in self.store.list_bonuses(BonusStatus.CONFIRMED):
            paid.append(self.mark_paid(bonus.id, now))
        logger.info("first_referral_bonuses_paid", count=len(paid))
        return paid

    def revoke_for_commission(
        self,
        commission_id: str,
        reason: str = "referral_refunded",
        now: Optional[datetime] = None,
    ) -> Optional[FirstReferralBonus]:
        """Revoke the bonus chained to a commission. Raises
        InvalidStateTransitionError for a bonus that is already paid."""
        with self.store.transaction():
            bonus = self.store.get_bonus_for_commission(commission_id)
            if bonus is None:
                return None
            if bonus.status == BonusStatus.REVOKED:
                return bonus
            return self.transition(bonus, BonusStatus.REVOKED, now, reason=reason)

    def get_bonus_status(self, member_id: str) -> BonusStatusView:
        member = self.store.get_member(member_id)
        bonus = self.store.get_bonus_for_member(member_id)
        eligible = bool(
            member and member.total_referred == 0 and not member.first_referral_bonus_earned
        )
        return BonusStatusView(
            has_bonus=bonus is not None,
            bonus=bonus,
            eligible_for_bonus=eligible,
            potential_amount=self.settings.bonus_fixed_amount
            if self.bonus_type == BonusType.FIXED
            else self.settings.bonus_max_amount,
        )
