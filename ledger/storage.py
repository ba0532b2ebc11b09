"""In-memory ledger store.

Stands in for the relational store behind the narrow interface the engine
relies on: a bounded-time transaction, find-or-create by external payment
id, validated counter increments and per-scope snapshot upserts. Reads return
copies so callers cannot mutate stored rows behind the store's back.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, NamedTuple, Optional

from .errors import InvariantViolation, LedgerError, TransientStoreFailure
from .logging_config import get_logger
from .models import (
    AttributionClick,
    Commission,
    CommissionStatus,
    Creator,
    DeviceSighting,
    FirstReferralBonus,
    BonusStatus,
    Member,
    MemberOrigin,
    ParkedEvent,
    RankMetric,
    Refund,
    RefundEvent,
    ReviewItem,
    SnapshotRow,
    utcnow,
)
from .settings import settings

logger = get_logger(__name__)

EARNINGS_TOLERANCE = Decimal("0.01")


def period_of(when: datetime) -> str:
    return f"{when.year:04d}-{when.month:02d}"


class MemberDelta(NamedTuple):
    earnings: Decimal = Decimal("0")
    monthly_earnings: Decimal = Decimal("0")
    referred: int = 0
    monthly_referred: int = 0


class CreatorDelta(NamedTuple):
    revenue: Decimal = Decimal("0")
    monthly_revenue: Decimal = Decimal("0")
    referrals: int = 0


class InMemoryStorage:
    def __init__(self, timeout: Optional[float] = None, current_period: Optional[str] = None):
        self.timeout = settings.store_timeout_seconds if timeout is None else timeout
        self._lock = threading.RLock()
        # Parking and review queues stay writable while the main lock is contended
        self._queue_lock = threading.Lock()

        self.creators: dict[str, Creator] = {}
        self.members: dict[str, Member] = {}
        self.code_index: dict[str, str] = {}
        self.commissions: dict[str, Commission] = {}
        self.payment_index: dict[str, str] = {}
        self.organic_payments: dict[str, str] = {}
        self.refunds: dict[str, Refund] = {}
        self.clicks: dict[str, AttributionClick] = {}
        self.devices: list[DeviceSighting] = []
        self.bonuses: dict[str, FirstReferralBonus] = {}
        self.bonus_index: dict[str, str] = {}
        self.attributions: dict[str, Optional[dict]] = {}
        self.snapshots: dict[tuple[str, str], tuple[list[SnapshotRow], datetime]] = {}
        self.review_queue: list[ReviewItem] = []
        self.parked_events: dict[str, ParkedEvent] = {}
        self.orphan_refunds: dict[str, list[RefundEvent]] = {}
        self.quarantined: dict[str, str] = {}
        self.current_period = current_period or period_of(utcnow())

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        """Serialize writers; raises TransientStoreFailure when the lock
        cannot be taken within the configured timeout."""
        if not self._lock.acquire(timeout=self.timeout):
            raise TransientStoreFailure(f"Store lock not acquired within {self.timeout}s")
        try:
            yield self
        finally:
            self._lock.release()

    # -- creators ----------------------------------------------------------

    def add_creator(self, creator: Creator) -> Creator:
        with self.transaction():
            self.creators[creator.id] = creator.model_copy(deep=True)
            return creator

    def get_creator(self, creator_id: str) -> Optional[Creator]:
        creator = self.creators.get(creator_id)
        return creator.model_copy(deep=True) if creator else None

    def list_creators(self) -> list[Creator]:
        return [c.model_copy(deep=True) for c in list(self.creators.values())]

    # -- members -----------------------------------------------------------

    def add_member(self, member: Member) -> Member:
        with self.transaction():
            if member.id in self.members:
                raise LedgerError(f"Member {member.id} already exists")
            code = member.referral_code.upper()
            if code in self.code_index:
                raise LedgerError(f"Referral code {code} already taken")
            stored = member.model_copy(update={"referral_code": code})
            self.members[member.id] = stored
            self.code_index[code] = member.id
            return stored.model_copy()

    def get_member(self, member_id: str) -> Optional[Member]:
        member = self.members.get(member_id)
        return member.model_copy() if member else None

    def get_member_by_code(self, code: str) -> Optional[Member]:
        member_id = self.code_index.get(code.upper().strip())
        return self.get_member(member_id) if member_id else None

    def referral_code_exists(self, code: str) -> bool:
        return code.upper() in self.code_index

    def list_members(self, creator_id: Optional[str] = None) -> list[Member]:
        return [
            m.model_copy() for m in list(self.members.values())
            if creator_id is None or m.creator_id == creator_id
        ]

    def members_referred_by(self, member_id: str, since: Optional[datetime] = None) -> list[Member]:
        return [
            m.model_copy() for m in list(self.members.values())
            if m.referred_by == member_id and (since is None or m.created_at >= since)
        ]

    def mark_bonus_earned(self, member_id: str) -> None:
        with self.transaction():
            self.members[member_id].first_referral_bonus_earned = True

    def link_referrer(self, member_id: str, referrer_id: str) -> bool:
        """Record the referrer of a member who joined without one. A member
        that already has a referrer keeps it."""
        with self.transaction():
            member = self.members.get(member_id)
            if member is None:
                raise LedgerError(f"Member {member_id} not found")
            if member.referred_by or member_id == referrer_id:
                return False
            self.members[member_id] = member.model_copy(
                update={"referred_by": referrer_id, "origin": MemberOrigin.REFERRED}
            )
            return True

    # -- counters ----------------------------------------------------------

    def _member_after(self, member_id: str, delta: MemberDelta) -> Member:
        member = self.members.get(member_id)
        if member is None:
            raise LedgerError(f"Member {member_id} not found")
        updated = member.model_copy(update={
            "lifetime_earnings": member.lifetime_earnings + delta.earnings,
            "monthly_earnings": member.monthly_earnings + delta.monthly_earnings,
            "total_referred": member.total_referred + delta.referred,
            "monthly_referred": member.monthly_referred + delta.monthly_referred,
        })
        problem = member_invariant_problem(updated)
        if problem:
            self.quarantine(member_id, problem)
            raise InvariantViolation(problem, record_id=member_id)
        return updated

    def _creator_after(self, creator_id: str, delta: CreatorDelta) -> Creator:
        creator = self.creators.get(creator_id)
        if creator is None:
            raise LedgerError(f"Creator {creator_id} not found")
        updated = creator.model_copy(update={
            "total_revenue": creator.total_revenue + delta.revenue,
            "monthly_revenue": creator.monthly_revenue + delta.monthly_revenue,
            "total_referrals": creator.total_referrals + delta.referrals,
        })
        problem = creator_invariant_problem(updated)
        if problem:
            self.quarantine(creator_id, problem)
            raise InvariantViolation(problem, record_id=creator_id)
        return updated

    def increment_member_counters(
        self,
        member_id: str,
        earnings: Decimal = Decimal("0"),
        monthly_earnings: Decimal = Decimal("0"),
        referred: int = 0,
        monthly_referred: int = 0,
    ) -> Member:
        """Atomically apply counter deltas; nothing is written when the
        result would break a counter invariant."""
        delta = MemberDelta(earnings, monthly_earnings, referred, monthly_referred)
        with self.transaction():
            updated = self._member_after(member_id, delta)
            self.members[member_id] = updated
            return updated.model_copy()

    def increment_creator_counters(
        self,
        creator_id: str,
        revenue: Decimal = Decimal("0"),
        monthly_revenue: Decimal = Decimal("0"),
        referrals: int = 0,
    ) -> Creator:
        delta = CreatorDelta(revenue, monthly_revenue, referrals)
        with self.transaction():
            updated = self._creator_after(creator_id, delta)
            self.creators[creator_id] = updated
            return updated.model_copy()

    def overwrite_member_counters(self, member_id: str, **values) -> None:
        """Used only by reconciliation, which recomputes from source rows."""
        with self.transaction():
            self.members[member_id] = self.members[member_id].model_copy(update=values)

    def overwrite_creator_counters(self, creator_id: str, **values) -> None:
        with self.transaction():
            self.creators[creator_id] = self.creators[creator_id].model_copy(update=values)

    def reset_monthly(self, new_period: str) -> None:
        with self.transaction():
            for member_id, member in list(self.members.items()):
                self.members[member_id] = member.model_copy(
                    update={"monthly_earnings": Decimal("0"), "monthly_referred": 0}
                )
            for creator_id, creator in list(self.creators.items()):
                self.creators[creator_id] = creator.model_copy(update={"monthly_revenue": Decimal("0")})
            self.current_period = new_period

    # -- quarantine ----------------------------------------------------------

    def quarantine(self, record_id: str, reason: str) -> None:
        with self.transaction():
            self.quarantined[record_id] = reason
        logger.critical("record_quarantined", record_id=record_id, reason=reason)

    def release(self, record_id: str) -> None:
        with self.transaction():
            self.quarantined.pop(record_id, None)

    def is_quarantined(self, record_id: str) -> bool:
        return record_id in self.quarantined

    # -- commissions ---------------------------------------------------------

    def get_commission(self, commission_id: str) -> Optional[Commission]:
        commission = self.commissions.get(commission_id)
        return commission.model_copy() if commission else None

    def get_commission_by_payment(self, payment_id: str) -> Optional[Commission]:
        commission_id = self.payment_index.get(payment_id)
        return self.get_commission(commission_id) if commission_id else None

    def find_or_create_commission(self, commission: Commission) -> tuple[Commission, bool]:
        """Insert keyed on the external payment id; on conflict return the
        existing row untouched."""
        with self.transaction():
            existing_id = self.payment_index.get(commission.payment_id)
            if existing_id:
                return self.commissions[existing_id].model_copy(), False
            self.commissions[commission.id] = commission.model_copy()
            self.payment_index[commission.payment_id] = commission.id
            return commission.model_copy(), True

    def persist_commission(
        self, commission: Commission, member_delta: MemberDelta, creator_delta: CreatorDelta
    ) -> tuple[Commission, bool]:
        """Insert a commission together with its counter increments.

        Both counter updates are validated before anything is written, so
        either the row and both increments land or none of them do. A
        payment id that already has a commission returns the existing row.
        """
        with self.transaction():
            existing_id = self.payment_index.get(commission.payment_id)
            if existing_id:
                return self.commissions[existing_id].model_copy(), False
            member = self._member_after(commission.member_id, member_delta)
            creator = self._creator_after(commission.creator_id, creator_delta)
            self.commissions[commission.id] = commission.model_copy()
            self.payment_index[commission.payment_id] = commission.id
            self.members[member.id] = member
            self.creators[creator.id] = creator
            return commission.model_copy(), True

    def persist_refund(
        self,
        refund: Refund,
        commission: Commission,
        member_delta: MemberDelta,
        creator_delta: CreatorDelta,
    ) -> None:
        """Record a refund, the updated commission and the counter reversals
        as one unit."""
        with self.transaction():
            if refund.refund_id in self.refunds:
                raise LedgerError(f"Refund {refund.refund_id} already recorded")
            if commission.id not in self.commissions:
                raise LedgerError(f"Commission {commission.id} not found")
            member = self._member_after(commission.member_id, member_delta)
            creator = self._creator_after(commission.creator_id, creator_delta)
            self.refunds[refund.refund_id] = refund.model_copy()
            self.commissions[commission.id] = commission.model_copy()
            self.members[member.id] = member
            self.creators[creator.id] = creator

    def list_commissions(self) -> list[Commission]:
        return [c.model_copy() for c in list(self.commissions.values())]

    def commissions_for_member(self, member_id: str, since: Optional[datetime] = None) -> list[Commission]:
        return [
            c.model_copy() for c in list(self.commissions.values())
            if c.member_id == member_id and (since is None or c.created_at >= since)
        ]

    def mark_organic_payment(self, payment_id: str, member_id: str) -> bool:
        with self.transaction():
            if payment_id in self.organic_payments or payment_id in self.payment_index:
                return False
            self.organic_payments[payment_id] = member_id
            return True

    def is_processed_payment(self, payment_id: str) -> bool:
        return payment_id in self.payment_index or payment_id in self.organic_payments

    def count_payments_by_member(self, member_id: str) -> int:
        referred = sum(1 for c in list(self.commissions.values()) if c.referred_member_id == member_id)
        organic = sum(1 for m in list(self.organic_payments.values()) if m == member_id)
        return referred + organic

    # -- refunds -------------------------------------------------------------

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        refund = self.refunds.get(refund_id)
        return refund.model_copy() if refund else None

    def refunds_for_commission(self, commission_id: str) -> list[Refund]:
        return [r.model_copy() for r in list(self.refunds.values()) if r.commission_id == commission_id]

    def add_orphan_refund(self, event: RefundEvent) -> None:
        with self._queue_lock:
            pending = self.orphan_refunds.setdefault(event.payment_id, [])
            if all(e.refund_id != event.refund_id for e in pending):
                pending.append(event.model_copy())

    def pop_orphan_refunds(self, payment_id: str) -> list[RefundEvent]:
        with self._queue_lock:
            return self.orphan_refunds.pop(payment_id, [])

    def list_orphan_refunds(self) -> list[RefundEvent]:
        return [e.model_copy() for events in list(self.orphan_refunds.values()) for e in events]

    # -- attribution ---------------------------------------------------------

    def add_click(self, click: AttributionClick) -> AttributionClick:
        with self.transaction():
            self.clicks[click.id] = click.model_copy()
            return click

    def get_click(self, click_id: str) -> Optional[AttributionClick]:
        click = self.clicks.get(click_id)
        return click.model_copy() if click else None

    def update_click(self, click: AttributionClick) -> None:
        with self.transaction():
            self.clicks[click.id] = click.model_copy()

    def clicks_for_code(self, code: str) -> list[AttributionClick]:
        code = code.upper()
        return [c.model_copy() for c in list(self.clicks.values()) if c.referral_code == code]

    def clicks_for_fingerprint(self, fingerprint: str) -> list[AttributionClick]:
        return [c.model_copy() for c in list(self.clicks.values()) if c.fingerprint == fingerprint]

    def clicks_for_ip(self, ip_hash: str) -> list[AttributionClick]:
        return [c.model_copy() for c in list(self.clicks.values()) if c.ip_hash == ip_hash]

    def record_device(self, sighting: DeviceSighting) -> None:
        with self.transaction():
            self.devices.append(sighting.model_copy())

    def devices_for_member(self, member_id: str, since: Optional[datetime] = None) -> list[DeviceSighting]:
        return [
            d.model_copy() for d in list(self.devices)
            if d.member_id == member_id and (since is None or d.seen_at >= since)
        ]

    def get_attribution(self, conversion_id: str) -> tuple[bool, Optional[dict]]:
        if conversion_id in self.attributions:
            return True, self.attributions[conversion_id]
        return False, None

    def save_attribution(self, conversion_id: str, attribution: Optional[dict]) -> None:
        with self.transaction():
            self.attributions.setdefault(conversion_id, attribution)

    # -- bonuses -------------------------------------------------------------

    def add_bonus(self, bonus: FirstReferralBonus) -> FirstReferralBonus:
        with self.transaction():
            if bonus.member_id in self.bonus_index:
                raise LedgerError(f"Member {bonus.member_id} already has a first referral bonus")
            self.bonuses[bonus.id] = bonus.model_copy()
            self.bonus_index[bonus.member_id] = bonus.id
            return bonus.model_copy()

    def get_bonus(self, bonus_id: str) -> Optional[FirstReferralBonus]:
        bonus = self.bonuses.get(bonus_id)
        return bonus.model_copy() if bonus else None

    def get_bonus_for_member(self, member_id: str) -> Optional[FirstReferralBonus]:
        bonus_id = self.bonus_index.get(member_id)
        return self.get_bonus(bonus_id) if bonus_id else None

    def get_bonus_for_commission(self, commission_id: str) -> Optional[FirstReferralBonus]:
        for bonus in list(self.bonuses.values()):
            if bonus.triggering_commission_id == commission_id:
                return bonus.model_copy()
        return None

    def update_bonus(self, bonus: FirstReferralBonus) -> None:
        with self.transaction():
            self.bonuses[bonus.id] = bonus.model_copy()

    def list_bonuses(self, status: Optional[BonusStatus] = None) -> list[FirstReferralBonus]:
        return [
            b.model_copy() for b in list(self.bonuses.values())
            if status is None or b.status == status
        ]

    # -- snapshot ------------------------------------------------------------

    def replace_snapshot(
        self,
        scope: str,
        rows: dict[RankMetric, list[SnapshotRow]],
        generated_at: datetime,
    ) -> None:
        """Upsert a scope's rows for every metric as one unit.

        Rows are staged on a copy of the table which replaces the live one
        in a single assignment, so readers see the previous snapshot or the
        new one and a failure part way leaves the previous one in place.
        """
        with self.transaction():
            staged = dict(self.snapshots)
            for metric, metric_rows in rows.items():
                table: dict[str, SnapshotRow] = {}
                for row in metric_rows:
                    self._stage_row(table, row)
                ordered = sorted(table.values(), key=lambda r: r.position)
                staged[(scope, metric.value)] = (ordered, generated_at)
            self.snapshots = staged

    def _stage_row(self, table: dict[str, SnapshotRow], row: SnapshotRow) -> None:
        table[row.member_id] = row.model_copy()

    def snapshot(self, scope: str, metric: RankMetric) -> tuple[list[SnapshotRow], Optional[datetime]]:
        rows, generated_at = self.snapshots.get((scope, metric.value), ([], None))
        return [r.model_copy() for r in rows], generated_at

    # -- queues --------------------------------------------------------------

    def enqueue_review(self, item: ReviewItem) -> None:
        with self._queue_lock:
            self.review_queue.append(item.model_copy())

    def list_review_queue(self) -> list[ReviewItem]:
        return [i.model_copy() for i in list(self.review_queue)]

    def park_event(self, event: ParkedEvent) -> None:
        with self._queue_lock:
            self.parked_events[event.id] = event.model_copy()

    def list_parked_events(self) -> list[ParkedEvent]:
        return [e.model_copy() for e in list(self.parked_events.values())]

    def remove_parked_event(self, parked_id: str) -> None:
        with self._queue_lock:
            self.parked_events.pop(parked_id, None)


def member_invariant_problem(member: Member) -> Optional[str]:
    if member.lifetime_earnings < -EARNINGS_TOLERANCE:
        return f"lifetime_earnings negative ({member.lifetime_earnings})"
    if member.monthly_earnings < -EARNINGS_TOLERANCE:
        return f"monthly_earnings negative ({member.monthly_earnings})"
    if member.monthly_earnings > member.lifetime_earnings + EARNINGS_TOLERANCE:
        return (
            f"monthly_earnings {member.monthly_earnings} exceeds "
            f"lifetime_earnings {member.lifetime_earnings}"
        )
    if member.total_referred < 0 or member.monthly_referred < 0:
        return "referral counters negative"
    if member.monthly_referred > member.total_referred:
        return (
            f"monthly_referred {member.monthly_referred} exceeds "
            f"total_referred {member.total_referred}"
        )
    return None


def creator_invariant_problem(creator: Creator) -> Optional[str]:
    if creator.total_revenue < -EARNINGS_TOLERANCE or creator.monthly_revenue < -EARNINGS_TOLERANCE:
        return "revenue counters negative"
    if creator.monthly_revenue > creator.total_revenue + EARNINGS_TOLERANCE:
        return (
            f"monthly_revenue {creator.monthly_revenue} exceeds "
            f"total_revenue {creator.total_revenue}"
        )
    if creator.total_referrals < 0:
        return "total_referrals negative"
    return None


def active_commission_value(commission: Commission) -> Decimal:
    """Sale value still standing after refunds."""
    if commission.status == CommissionStatus.REFUNDED:
        return Decimal("0")
    return commission.sale_amount - commission.refunded_amount
