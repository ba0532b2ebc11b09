"""Counter reconciliation.

Cached counters on members and creators are a denormalized view of the
commission, refund and bonus rows. ``reconcile_counters`` recomputes them
from those rows, overwrites any drift and reports what it changed.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from .logging_config import get_logger
from .models import (
    BonusStatus,
    CounterDrift,
    PaymentType,
    ReconciliationReport,
    utcnow,
)
from .storage import (
    InMemoryStorage,
    creator_invariant_problem,
    member_invariant_problem,
    period_of,
)

logger = get_logger(__name__)


def _member_actuals(store: InMemoryStorage, member_id: str) -> dict:
    lifetime = Decimal("0")
    monthly = Decimal("0")
    referred = 0
    monthly_referred = 0

    for commission in store.commissions_for_member(member_id):
        refunds = store.refunds_for_commission(commission.id)
        net = commission.member_share - sum((r.member_share_reversed for r in refunds), Decimal("0"))
        in_period = period_of(commission.created_at) == store.current_period
        lifetime += net
        if in_period:
            monthly += net
        if commission.payment_type == PaymentType.INITIAL and not any(r.referral_reversed for r in refunds):
            referred += 1
            if in_period:
                monthly_referred += 1

    bonus = store.get_bonus_for_member(member_id)
    if bonus and bonus.status == BonusStatus.PAID:
        lifetime += bonus.amount
        if bonus.paid_at and period_of(bonus.paid_at) == store.current_period:
            monthly += bonus.amount

    return {
        "lifetime_earnings": lifetime,
        "monthly_earnings": monthly,
        "total_referred": referred,
        "monthly_referred": monthly_referred,
    }


def _creator_actuals(store: InMemoryStorage, creator_id: str) -> dict:
    total = Decimal("0")
    monthly = Decimal("0")
    referrals = 0
    for commission in store.list_commissions():
        if commission.creator_id != creator_id:
            continue
        refunds = store.refunds_for_commission(commission.id)
        net = commission.sale_amount - sum((r.amount for r in refunds), Decimal("0"))
        total += net
        if period_of(commission.created_at) == store.current_period:
            monthly += net
        if commission.payment_type == PaymentType.INITIAL and not any(r.referral_reversed for r in refunds):
            referrals += 1
    return {"total_revenue": total, "monthly_revenue": monthly, "total_referrals": referrals}


def _drift(record_type: str, record_id: str, cached, actual: dict) -> list[CounterDrift]:
    return [
        CounterDrift(
            record_type=record_type,
            record_id=record_id,
            field=name,
            cached=str(getattr(cached, name)),
            actual=str(value),
        )
        for name, value in actual.items()
        if getattr(cached, name) != value
    ]


def reconcile_counters(store: InMemoryStorage, now: Optional[datetime] = None) -> ReconciliationReport:
    now = now or utcnow()
    report = ReconciliationReport()

    with store.transaction():
        for member in store.list_members():
            report.members_checked += 1
            actual = _member_actuals(store, member.id)
            drift = _drift("member", member.id, member, actual)
            if drift:
                store.overwrite_member_counters(member.id, **actual)
                report.corrections.extend(drift)
            _settle_quarantine(store, member.id, member_invariant_problem(member.model_copy(update=actual)), report)

        for creator in store.list_creators():
            report.creators_checked += 1
            actual = _creator_actuals(store, creator.id)
            drift = _drift("creator", creator.id, creator, actual)
            if drift:
                store.overwrite_creator_counters(creator.id, **actual)
                report.corrections.extend(drift)
            _settle_quarantine(store, creator.id, creator_invariant_problem(creator.model_copy(update=actual)), report)

    for correction in report.corrections:
        logger.warning(
            "counter_drift_corrected",
            record_type=correction.record_type,
            record_id=correction.record_id,
            field=correction.field,
            cached=correction.cached,
            actual=correction.actual,
        )
    logger.info(
        "reconciliation_complete",
        members=report.members_checked,
        creators=report.creators_checked,
        corrections=len(report.corrections),
        at=now.isoformat(),
    )
    return report


def _settle_quarantine(
    store: InMemoryStorage, record_id: str, problem: Optional[str], report: ReconciliationReport
) -> None:
    if problem:
        store.quarantine(record_id, problem)
        report.quarantined.append(record_id)
    elif store.is_quarantined(record_id):
        store.release(record_id)
        report.released.append(record_id)
        logger.info("record_released", record_id=record_id)


def reset_monthly_counters(store: InMemoryStorage, now: Optional[datetime] = None) -> bool:
    """Start a new counter period. Returns False when ``now`` falls in the
    period already being counted."""
    now = now or utcnow()
    new_period = period_of(now)
    if new_period == store.current_period:
        return False
    previous = store.current_period
    store.reset_monthly(new_period)
    logger.info("monthly_counters_reset", previous_period=previous, period=new_period)
    return True
