"""Default fraud checks.

Each check reads the ledger store through the lookups it already exposes
for attribution and ranking, and answers a single yes/no question.
"""

from collections import Counter
from datetime import timedelta

from fraud.rule_engine import CheckContext, FraudRule, RiskSubject, RuleRegistry

VELOCITY_WINDOW = timedelta(hours=1)
VELOCITY_LIMIT = 10

SHARED_IP_WINDOW = timedelta(hours=24)
SHARED_IP_LIMIT = 5

AMOUNT_WINDOW = timedelta(days=7)
AMOUNT_REPEAT_LIMIT = 2

DEVICE_WINDOW = timedelta(days=30)
DEVICE_LIMIT = 3

TIMING_WINDOW = timedelta(days=7)
TIMING_MIN_REFERRALS = 5
TIMING_MAX_DISTINCT_HOURS = 2

CHARGEBACK_LIMIT = 2

SELF_REFERRAL_LOOKBACK = timedelta(days=90)


def rapid_velocity(subject: RiskSubject, ctx: CheckContext) -> bool:
    recent = ctx.store.members_referred_by(subject.member_id, since=ctx.now - VELOCITY_WINDOW)
    return len(recent) > VELOCITY_LIMIT


def shared_ip_accounts(subject: RiskSubject, ctx: CheckContext) -> bool:
    if not subject.ip_hash:
        return False
    since = ctx.now - SHARED_IP_WINDOW
    converted = [
        c for c in ctx.store.clicks_for_ip(subject.ip_hash)
        if c.converted and c.created_at >= since
    ]
    return len(converted) > SHARED_IP_LIMIT


def amount_repetition(subject: RiskSubject, ctx: CheckContext) -> bool:
    commissions = ctx.store.commissions_for_member(subject.member_id, since=ctx.now - AMOUNT_WINDOW)
    counts = Counter(c.sale_amount for c in commissions)
    repeats = sum(n - 1 for n in counts.values())
    return repeats > AMOUNT_REPEAT_LIMIT


def shared_device(subject: RiskSubject, ctx: CheckContext) -> bool:
    if not subject.fingerprint:
        return False
    since = ctx.now - DEVICE_WINDOW
    converted = [
        c for c in ctx.store.clicks_for_fingerprint(subject.fingerprint)
        if c.converted and c.created_at >= since
    ]
    return len(converted) > DEVICE_LIMIT


def timing_clustering(subject: RiskSubject, ctx: CheckContext) -> bool:
    referrals = ctx.store.members_referred_by(subject.member_id, since=ctx.now - TIMING_WINDOW)
    if len(referrals) <= TIMING_MIN_REFERRALS:
        return False
    hours = {m.created_at.hour for m in referrals}
    return len(hours) <= TIMING_MAX_DISTINCT_HOURS


def chargeback_history(subject: RiskSubject, ctx: CheckContext) -> bool:
    refunded = [
        c for c in ctx.store.commissions_for_member(subject.member_id)
        if c.status == "refunded"
    ]
    return len(refunded) > CHARGEBACK_LIMIT


def _referrer_devices(subject: RiskSubject, ctx: CheckContext):
    since = ctx.now - SELF_REFERRAL_LOOKBACK
    return ctx.store.devices_for_member(subject.member_id, since=since)


def self_referral_fingerprint(subject: RiskSubject, ctx: CheckContext) -> bool:
    if not subject.fingerprint or not subject.referred_member_id:
        return False
    return any(d.fingerprint == subject.fingerprint for d in _referrer_devices(subject, ctx))


def self_referral_ip(subject: RiskSubject, ctx: CheckContext) -> bool:
    if not subject.ip_hash or not subject.referred_member_id:
        return False
    return any(d.ip_hash == subject.ip_hash for d in _referrer_devices(subject, ctx))


def create_default_rules() -> list[FraudRule]:
    return [
        FraudRule(
            id="rapid_velocity", name="Rapid Referral Velocity", weight=30,
            check=rapid_velocity,
            description="More than 10 referrals in the last hour",
        ),
        FraudRule(
            id="same_ip_accounts", name="Multiple Accounts Same IP", weight=40,
            check=shared_ip_accounts,
            description="More than 5 converted clicks from one IP in 24 hours",
        ),
        FraudRule(
            id="payment_pattern", name="Suspicious Payment Pattern", weight=35,
            check=amount_repetition,
            description="Identical sale amounts repeated within a week",
        ),
        FraudRule(
            id="device_fingerprint", name="Same Device Multiple Accounts", weight=45,
            check=shared_device,
            description="More than 3 converted clicks from one device in 30 days",
        ),
        FraudRule(
            id="time_anomaly", name="Suspicious Time Pattern", weight=15,
            check=timing_clustering,
            description="Referrals bunched into one or two hours of the day",
        ),
        FraudRule(
            id="chargeback_history", name="Chargeback History", weight=50,
            check=chargeback_history,
            description="More than 2 refunded commissions",
        ),
        FraudRule(
            id="self_referral_fingerprint", name="Self Referral (Device)", weight=50,
            check=self_referral_fingerprint,
            description="Converting device was seen on the referrer's account",
        ),
        FraudRule(
            id="self_referral_ip", name="Self Referral (IP)", weight=40,
            check=self_referral_ip,
            description="Converting IP was seen on the referrer's account",
        ),
    ]


def default_registry() -> RuleRegistry:
    return RuleRegistry(create_default_rules())
