from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, Union

from redis import Redis
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fraud.checks import default_registry
from fraud.rule_engine import FraudScorer, RiskAssessment, RiskSubject, RuleRegistry

from .attribution import (
    Attribution,
    AttributionRequest,
    AttributionResolver,
    generate_referral_code,
    hash_ip,
)
from .bonus import BonusStateMachine
from .calculator import (
    calculate_monthly_value,
    calculate_split,
    normalize_billing_period,
    to_decimal,
)
from .errors import (
    DuplicateEvent,
    FraudBlocked,
    InvalidAmount,
    InvalidStateTransitionError,
    InvariantViolation,
    LedgerError,
    MemberNotFoundError,
    TransientStoreFailure,
)
from .logging_config import get_logger
from .models import (
    AttributionClick,
    ClickRequest,
    Commission,
    CommissionStatus,
    Creator,
    DeviceSighting,
    FirstReferralBonus,
    GLOBAL_SCOPE,
    Leaderboard,
    Member,
    MemberOrigin,
    MemberStats,
    ParkedEvent,
    PaymentEvent,
    PaymentResult,
    PaymentStatus,
    PaymentType,
    RankMetric,
    ReconciliationReport,
    Refund,
    RefundEvent,
    RefundResult,
    RefundStatus,
    ReviewItem,
    TierThresholds,
    utcnow,
)
from .ranking import RankAggregator, SnapshotRefresher
from .reconciliation import reconcile_counters, reset_monthly_counters
from .settings import Settings, settings as default_settings
from .storage import (
    CreatorDelta,
    InMemoryStorage,
    MemberDelta,
    active_commission_value,
    period_of,
)

logger = get_logger(__name__)

CODE_ATTEMPTS = 10


class CommissionNotYetPersisted(LedgerError):
    """A refund arrived before the payment it refers to."""


class CommissionProcessor:
    """Turns payment and refund events into commissions, counters and
    bonuses, and serves the dashboard reads built on them."""

    def __init__(
        self,
        store: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        registry: Optional[RuleRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        cache: Optional[Redis] = None,
    ):
        self.settings = settings or default_settings
        self.store = store or InMemoryStorage(timeout=self.settings.store_timeout_seconds)
        self.clock = clock
        self.resolver = AttributionResolver(self.store, self.settings)
        self.bonuses = BonusStateMachine(self.store, self.settings)
        self.ranks = RankAggregator(self.store, self.settings, clock)
        self.scorer = FraudScorer(
            registry or default_registry(),
            self.store,
            cache=cache if cache is not None else Redis.from_url(self.settings.redis_url),
            cache_ttl=self.settings.fraud_cache_ttl_seconds,
            max_workers=self.settings.fraud_check_workers,
            clock=clock,
        )
        self.refresher = SnapshotRefresher(self.ranks)

    # -- onboarding ------------------------------------------------------------

    def register_creator(
        self, creator_id: str, name: str = "Community", tier_thresholds: Optional[TierThresholds] = None
    ) -> Creator:
        existing = self.store.get_creator(creator_id)
        if existing:
            return existing
        creator = Creator(id=creator_id, name=name, tier_thresholds=tier_thresholds or TierThresholds())
        self.store.add_creator(creator)
        logger.info("creator_registered", creator_id=creator_id)
        return creator

    def register_member(
        self,
        creator_id: str,
        member_id: str,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        referred_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Member:
        existing = self.store.get_member(member_id)
        if existing:
            return existing
        if self.store.get_creator(creator_id) is None:
            raise LedgerError(f"Creator {creator_id} not found")
        if referred_by:
            referrer = self.store.get_member(referred_by)
            if referrer is None or referrer.creator_id != creator_id:
                raise LedgerError(f"Referrer {referred_by} is not a member of {creator_id}")

        with self.store.transaction():
            # Concurrent first payments for the same member register it once
            existing = self.store.get_member(member_id)
            if existing:
                return existing
            code = None
            for _ in range(CODE_ATTEMPTS):
                candidate = generate_referral_code(username or user_id or member_id)
                if not self.store.referral_code_exists(candidate):
                    code = candidate
                    break
            if code is None:
                raise LedgerError("Could not generate a unique referral code")

            member = self.store.add_member(Member(
                id=member_id,
                user_id=user_id or member_id,
                creator_id=creator_id,
                referral_code=code,
                origin=MemberOrigin.REFERRED if referred_by else MemberOrigin.ORGANIC,
                referred_by=referred_by,
                created_at=now or self.clock(),
            ))
        logger.info(
            "member_registered",
            member_id=member_id,
            creator_id=creator_id,
            referral_code=member.referral_code,
            origin=member.origin.value,
        )
        return member

    def record_click(self, request: ClickRequest, now: Optional[datetime] = None) -> Optional[AttributionClick]:
        ip_hash = hash_ip(request.ip_address, self.settings.ip_hash_salt) if request.ip_address else None
        return self.resolver.record_click(request.referral_code, request.fingerprint, ip_hash, now or self.clock())

    def record_device(
        self,
        member_id: str,
        fingerprint: Optional[str] = None,
        ip_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        if not fingerprint and not ip_hash:
            return
        self.store.record_device(DeviceSighting(
            member_id=member_id,
            fingerprint=fingerprint,
            ip_hash=ip_hash,
            seen_at=now or self.clock(),
        ))

    # -- retry -----------------------------------------------------------------

    def _retrying(self, *retry_on: type) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(retry_on or (TransientStoreFailure,)),
            stop=stop_after_attempt(self.settings.retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_base_delay_seconds,
                max=self.settings.retry_max_delay_seconds,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        logger.warning(
            "store_operation_retry",
            attempt=state.attempt_number,
            error=str(state.outcome.exception()) if state.outcome else None,
        )

    def _park(self, kind: str, event: Union[PaymentEvent, RefundEvent], reason: str) -> ParkedEvent:
        parked = ParkedEvent(kind=kind, payload=event.model_dump(mode="json"), reason=reason)
        self.store.park_event(parked)
        logger.warning("event_parked", kind=kind, parked_id=parked.id, reason=reason)
        return parked

    # -- payments --------------------------------------------------------------

    def process_payment_event(self, event: PaymentEvent) -> PaymentResult:
        """Process a payment webhook.

        Replaying the same payment id returns ``duplicate`` and changes
        nothing. Events that cannot be applied right now are parked and
        reported as ``deferred``.
        """
        result = self._handle_payment(event)
        if result.status == PaymentStatus.DEFERRED:
            self._park("payment", event, result.reason or "deferred")
        return result

    def _handle_payment(self, event: PaymentEvent) -> PaymentResult:
        log = logger.bind(payment_id=event.payment_id, creator_id=event.creator_id)
        try:
            result, commission = self._retrying()(self._process_payment, event)
        except TransientStoreFailure as e:
            log.error("payment_retries_exhausted", error=str(e))
            return PaymentResult(status=PaymentStatus.DEFERRED, reason="store_unavailable")
        except DuplicateEvent as e:
            log.info("payment_duplicate", commission_id=e.commission_id)
            return PaymentResult(
                status=PaymentStatus.DUPLICATE, commission_id=e.commission_id, reason="duplicate_payment"
            )
        except FraudBlocked as e:
            log.warning("payment_blocked", score=e.score, triggered=e.triggered_rules)
            return PaymentResult(status=PaymentStatus.REJECTED, reason="fraud_blocked")
        except InvalidAmount as e:
            log.warning("payment_invalid_amount", error=str(e))
            return PaymentResult(status=PaymentStatus.REJECTED, reason=str(e))
        except InvariantViolation as e:
            log.critical("payment_invariant_violation", record_id=e.record_id, error=str(e))
            return PaymentResult(status=PaymentStatus.DEFERRED, reason="invariant_violation")

        if result.status == PaymentStatus.ACCEPTED:
            self._after_commit(event.payment_id, commission)
        log.info("payment_processed", status=result.status.value, reason=result.reason)
        return result

    def _process_payment(self, event: PaymentEvent) -> tuple[PaymentResult, Optional[Commission]]:
        now = event.occurred_at
        existing = self.store.get_commission_by_payment(event.payment_id)
        if existing:
            raise DuplicateEvent(f"Payment {event.payment_id} already processed", existing.id)
        if self.store.is_processed_payment(event.payment_id):
            raise DuplicateEvent(f"Payment {event.payment_id} already processed")

        creator = self.store.get_creator(event.creator_id)
        if creator is None:
            return PaymentResult(status=PaymentStatus.REJECTED, reason="unknown_creator"), None

        split = calculate_split(event.amount, self.settings.max_sale_amount)

        attribution = self.resolver.resolve(AttributionRequest(
            conversion_id=event.payment_id,
            creator_id=event.creator_id,
            converting_member_id=event.member_id,
            converting_user_id=event.user_id,
            referral_code=event.referral_code,
            click_based=event.click_based,
            fingerprint=event.fingerprint,
            ip_hash=event.ip_hash,
            occurred_at=now,
        ))

        member = self.store.get_member(event.member_id)
        if member is None:
            member = self.register_member(
                event.creator_id,
                event.member_id,
                user_id=event.user_id,
                username=event.username,
                referred_by=attribution.referrer_id if attribution else None,
                now=now,
            )

        if attribution is None:
            if not self.store.mark_organic_payment(event.payment_id, member.id):
                raise DuplicateEvent(f"Payment {event.payment_id} already processed")
            self.record_device(member.id, event.fingerprint, event.ip_hash, now)
            return PaymentResult(status=PaymentStatus.ACCEPTED, reason="organic"), None

        if self.store.is_quarantined(attribution.referrer_id):
            return PaymentResult(status=PaymentStatus.DEFERRED, reason="referrer_quarantined"), None

        # Scoring only reads, so it runs without holding the store lock
        assessment = self.scorer.assess(RiskSubject(
            member_id=attribution.referrer_id,
            referred_member_id=member.id,
            referred_user_id=member.user_id,
            referral_code=attribution.referral_code,
            fingerprint=event.fingerprint,
            ip_hash=event.ip_hash,
            amount=split.sale_amount,
        ))
        if assessment.should_block:
            self._enqueue_review(event, attribution.referrer_id, assessment)
            raise FraudBlocked(
                f"Payment {event.payment_id} blocked for referrer {attribution.referrer_id}",
                score=assessment.score,
                triggered_rules=assessment.triggered_rules,
            )

        with self.store.transaction():
            # referrer still holds the counters from before this commission
            referrer = self.store.get_member(attribution.referrer_id)
            commission = self._build_commission(event, attribution, member, split, assessment)
            initial = commission.payment_type == PaymentType.INITIAL
            in_period = period_of(commission.created_at) == self.store.current_period
            commission, created = self.store.persist_commission(
                commission,
                MemberDelta(
                    earnings=split.member_share,
                    monthly_earnings=split.member_share if in_period else Decimal("0"),
                    referred=1 if initial else 0,
                    monthly_referred=1 if initial and in_period else 0,
                ),
                CreatorDelta(
                    revenue=split.sale_amount,
                    monthly_revenue=split.sale_amount if in_period else Decimal("0"),
                    referrals=1 if initial else 0,
                ),
            )
            if not created:
                raise DuplicateEvent(f"Payment {event.payment_id} already processed", commission.id)
            if self.store.link_referrer(member.id, referrer.id):
                logger.info("member_referrer_linked", member_id=member.id, referrer_id=referrer.id)
            self.bonuses.evaluate(referrer, commission, now)

        logger.info(
            "commission_persisted",
            commission_id=commission.id,
            referrer_id=referrer.id,
            member_share=str(commission.member_share),
            payment_type=commission.payment_type.value,
            flagged=commission.flagged_for_review,
        )
        if commission.flagged_for_review:
            self._enqueue_review(event, referrer.id, assessment)
        self.record_device(member.id, event.fingerprint, event.ip_hash, now)

        return PaymentResult(
            status=PaymentStatus.ACCEPTED,
            commission_id=commission.id,
            reason="flagged_for_review" if commission.flagged_for_review else None,
        ), commission

    def _enqueue_review(self, event: PaymentEvent, referrer_id: str, assessment: RiskAssessment) -> None:
        self.store.enqueue_review(ReviewItem(
            payment_id=event.payment_id,
            member_id=referrer_id,
            score=assessment.score,
            level=assessment.level.value,
            triggered_rules=assessment.triggered_rules,
            blocked=assessment.should_block,
            created_at=event.occurred_at,
        ))

    def _build_commission(
        self,
        event: PaymentEvent,
        attribution: Attribution,
        member: Member,
        split,
        assessment: RiskAssessment,
    ) -> Commission:
        billing_period = normalize_billing_period(event.billing_period)
        has_paid_before = any(
            c.referred_member_id == member.id for c in self.store.commissions_for_member(attribution.referrer_id)
        )
        flagged = assessment.should_review
        return Commission(
            payment_id=event.payment_id,
            member_id=attribution.referrer_id,
            creator_id=event.creator_id,
            referred_member_id=member.id,
            sale_amount=split.sale_amount,
            member_share=split.member_share,
            creator_share=split.creator_share,
            platform_share=split.platform_share,
            payment_type=PaymentType.RECURRING if has_paid_before else PaymentType.INITIAL,
            status=CommissionStatus.PENDING if flagged else CommissionStatus.PAID,
            billing_period=billing_period,
            monthly_value=calculate_monthly_value(split.sale_amount, billing_period),
            flagged_for_review=flagged,
            created_at=event.occurred_at,
        )

    def _after_commit(self, payment_id: str, commission: Optional[Commission]) -> None:
        if commission is not None:
            self.ranks.invalidate(commission.creator_id)
            if self.settings.eager_rank_refresh:
                self.ranks.refresh_dirty()

        for orphan in self.store.pop_orphan_refunds(payment_id):
            if commission is None:
                logger.info("orphan_refund_dropped", refund_id=orphan.refund_id, payment_id=payment_id)
                continue
            logger.info("orphan_refund_replayed", refund_id=orphan.refund_id, payment_id=payment_id)
            self.process_refund_event(orphan)

    # -- refunds ---------------------------------------------------------------

    def process_refund_event(self, event: RefundEvent) -> RefundResult:
        """Reverse a commission, fully or proportionally.

        A refund for a payment that has not been recorded yet is kept as an
        orphan and replayed once the payment arrives.
        """
        log = logger.bind(refund_id=event.refund_id, payment_id=event.payment_id)
        try:
            result = self._retrying(TransientStoreFailure, CommissionNotYetPersisted)(
                self._process_refund, event
            )
        except CommissionNotYetPersisted:
            self.store.add_orphan_refund(event)
            log.warning("refund_orphaned")
            return RefundResult(status=RefundStatus.NOT_FOUND, reason="awaiting_payment")
        except InvalidAmount as e:
            log.warning("refund_invalid_amount", error=str(e))
            return RefundResult(status=RefundStatus.NOT_FOUND, reason="invalid_amount")
        except TransientStoreFailure as e:
            log.error("refund_retries_exhausted", error=str(e))
            self._park("refund", event, "store_unavailable")
            return RefundResult(status=RefundStatus.NOT_FOUND, reason="store_unavailable")
        except InvariantViolation as e:
            log.critical("refund_invariant_violation", record_id=e.record_id, error=str(e))
            self._park("refund", event, "invariant_violation")
            return RefundResult(status=RefundStatus.NOT_FOUND, reason="invariant_violation")

        if result.status == RefundStatus.REVERSED and result.commission_id:
            commission = self.store.get_commission(result.commission_id)
            self.ranks.invalidate(commission.creator_id)
            if self.settings.eager_rank_refresh:
                self.ranks.refresh_dirty()
        log.info("refund_processed", status=result.status.value, reason=result.reason)
        return result

    def _process_refund(self, event: RefundEvent) -> RefundResult:
        with self.store.transaction():
            previous = self.store.get_refund(event.refund_id)
            if previous:
                return RefundResult(
                    status=RefundStatus.ALREADY_REVERSED,
                    commission_id=previous.commission_id,
                    member_share_reversed=previous.member_share_reversed,
                    reason="duplicate_refund",
                )

            commission = self.store.get_commission_by_payment(event.payment_id)
            if commission is None:
                if self.store.is_processed_payment(event.payment_id):
                    return RefundResult(status=RefundStatus.NOT_FOUND, reason="organic_payment")
                raise CommissionNotYetPersisted(event.payment_id)

            remaining = active_commission_value(commission)
            if remaining <= 0:
                return RefundResult(
                    status=RefundStatus.ALREADY_REVERSED,
                    commission_id=commission.id,
                    reason="fully_refunded",
                )

            amount = remaining if event.amount is None else to_decimal(event.amount)
            if amount <= 0:
                raise InvalidAmount("Refund amount must be positive")
            amount = min(amount, remaining)
            full = amount == remaining

            if full:
                # Reverse exactly what is left so repeated partials never drift
                earlier = self.store.refunds_for_commission(commission.id)
                member_rev = commission.member_share - sum((r.member_share_reversed for r in earlier), Decimal("0"))
                creator_rev = commission.creator_share - sum((r.creator_share_reversed for r in earlier), Decimal("0"))
                platform_rev = commission.platform_share - sum((r.platform_share_reversed for r in earlier), Decimal("0"))
            else:
                ratio = amount / commission.sale_amount
                member_rev = commission.member_share * ratio
                creator_rev = commission.creator_share * ratio
                platform_rev = commission.platform_share * ratio

            referral_reversed = full and commission.payment_type == PaymentType.INITIAL
            in_period = period_of(commission.created_at) == self.store.current_period

            refund = Refund(
                refund_id=event.refund_id,
                payment_id=event.payment_id,
                commission_id=commission.id,
                amount=amount,
                member_share_reversed=member_rev,
                creator_share_reversed=creator_rev,
                platform_share_reversed=platform_rev,
                referral_reversed=referral_reversed,
                in_period=in_period,
                reason=event.reason or "refund_requested",
                created_at=event.occurred_at,
            )
            updated = commission.model_copy(update={
                "refunded_amount": commission.refunded_amount + amount,
                "status": CommissionStatus.REFUNDED if full else commission.status,
            })
            self.store.persist_refund(
                refund,
                updated,
                MemberDelta(
                    earnings=-member_rev,
                    monthly_earnings=-member_rev if in_period else Decimal("0"),
                    referred=-1 if referral_reversed else 0,
                    monthly_referred=-1 if referral_reversed and in_period else 0,
                ),
                CreatorDelta(
                    revenue=-amount,
                    monthly_revenue=-amount if in_period else Decimal("0"),
                    referrals=-1 if referral_reversed else 0,
                ),
            )
            logger.info(
                "commission_reversed",
                commission_id=commission.id,
                amount=str(amount),
                member_share_reversed=str(member_rev),
                full=full,
                in_period=in_period,
            )

            if full:
                self._revoke_bonus(commission.id, event)

        return RefundResult(
            status=RefundStatus.REVERSED,
            commission_id=commission.id,
            member_share_reversed=member_rev,
        )

    def _revoke_bonus(self, commission_id: str, event: RefundEvent) -> Optional[FirstReferralBonus]:
        try:
            return self.bonuses.revoke_for_commission(
                commission_id, reason=event.reason or "referral_refunded", now=event.occurred_at
            )
        except InvalidStateTransitionError:
            # Paid bonuses are final; recovery is a manual adjustment
            logger.warning("bonus_revoke_after_payout", commission_id=commission_id, refund_id=event.refund_id)
            return None

    # -- backlog and parked events -------------------------------------------

    def process_event(self, event: Union[PaymentEvent, RefundEvent]) -> Union[PaymentResult, RefundResult]:
        if isinstance(event, RefundEvent):
            return self.process_refund_event(event)
        return self.process_payment_event(event)

    def process_backlog(
        self, events: Iterable[Union[PaymentEvent, RefundEvent]]
    ) -> list[Union[PaymentResult, RefundResult]]:
        """Work through a batch with a bounded pool; results keep input order."""
        events = list(events)
        with ThreadPoolExecutor(max_workers=max(1, self.settings.backlog_workers)) as pool:
            results = list(pool.map(self.process_event, events))
        logger.info("backlog_processed", events=len(events))
        return results

    def list_parked_events(self) -> list[ParkedEvent]:
        return self.store.list_parked_events()

    def reprocess_parked(self) -> list[Union[PaymentResult, RefundResult]]:
        results = []
        for parked in self.store.list_parked_events():
            if parked.kind == "refund":
                result = self.process_refund_event(RefundEvent.model_validate(parked.payload))
                done = True
            else:
                result = self._handle_payment(PaymentEvent.model_validate(parked.payload))
                done = result.status != PaymentStatus.DEFERRED
            if done:
                self.store.remove_parked_event(parked.id)
            results.append(result)
        logger.info("parked_events_reprocessed", count=len(results))
        return results

    # -- reads -----------------------------------------------------------------

    def get_member(self, member_id: str) -> Member:
        member = self.store.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return member

    def get_member_stats(self, member_id: str) -> MemberStats:
        member = self.get_member(member_id)
        creator = self.store.get_creator(member.creator_id)
        thresholds = creator.tier_thresholds if creator else TierThresholds()
        quarantined = self.store.is_quarantined(member_id)

        ranks = {}
        if not quarantined:
            ranks = {
                "global_referrals_rank": self.ranks.realtime_rank(member_id, RankMetric.TOTAL_REFERRALS, GLOBAL_SCOPE),
                "community_referrals_rank": self.ranks.realtime_rank(
                    member_id, RankMetric.TOTAL_REFERRALS, member.creator_id
                ),
                "global_earnings_rank": self.ranks.realtime_rank(member_id, RankMetric.LIFETIME_EARNINGS, GLOBAL_SCOPE),
            }

        return MemberStats(
            member_id=member.id,
            creator_id=member.creator_id,
            referral_code=member.referral_code,
            origin=member.origin,
            lifetime_earnings=member.lifetime_earnings,
            monthly_earnings=member.monthly_earnings,
            total_referred=member.total_referred,
            monthly_referred=member.monthly_referred,
            tier=thresholds.tier_for(member.total_referred),
            bonus=self.bonuses.get_bonus_status(member_id),
            quarantined=quarantined,
            **ranks,
        )

    def get_leaderboard(
        self,
        scope: str = GLOBAL_SCOPE,
        metric: RankMetric = RankMetric.TOTAL_REFERRALS,
        limit: int = 10,
    ) -> Leaderboard:
        return self.ranks.get_leaderboard(scope, metric, limit)

    def get_risk_assessment(self, member_id: str) -> RiskAssessment:
        member = self.get_member(member_id)
        sightings = self.store.devices_for_member(member.id)
        latest = max(sightings, key=lambda s: s.seen_at) if sightings else None
        return self.scorer.assess(RiskSubject(
            member_id=member.id,
            fingerprint=latest.fingerprint if latest else None,
            ip_hash=latest.ip_hash if latest else None,
        ))

    def list_review_queue(self) -> list[ReviewItem]:
        return self.store.list_review_queue()

    # -- jobs ------------------------------------------------------------------

    def confirm_bonuses(self, now: Optional[datetime] = None) -> list[FirstReferralBonus]:
        return self.bonuses.confirm_due(now or self.clock())

    def pay_bonuses(self, now: Optional[datetime] = None) -> list[FirstReferralBonus]:
        paid = self.bonuses.pay_confirmed(now or self.clock())
        for bonus in paid:
            member = self.store.get_member(bonus.member_id)
            self.ranks.invalidate(member.creator_id if member else None)
        return paid

    def refresh_snapshot(self, now: Optional[datetime] = None) -> dict[str, bool]:
        return self.ranks.refresh_snapshot(now or self.clock())

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        report = reconcile_counters(self.store, now or self.clock())
        if report.corrections or report.quarantined or report.released:
            self.ranks.invalidate()
        return report

    def reset_monthly(self, now: Optional[datetime] = None) -> bool:
        changed = reset_monthly_counters(self.store, now or self.clock())
        if changed:
            self.ranks.invalidate()
        return changed

    def start_background(self) -> None:
        self.refresher.start()

    def stop_background(self) -> None:
        self.refresher.stop()
