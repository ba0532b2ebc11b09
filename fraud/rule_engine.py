import hashlib
import json
import pickle
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import structlog
from redis import Redis, RedisError

logger = structlog.get_logger(__name__)

CACHE_PREFIX = "fraud:risk:"

MAX_SCORE = 100
LOW_MAX = 30
MEDIUM_MAX = 70


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskAction(str, Enum):
    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"


def classify(score: int) -> tuple[RiskLevel, RiskAction]:
    if score <= LOW_MAX:
        return RiskLevel.LOW, RiskAction.ALLOW
    if score <= MEDIUM_MAX:
        return RiskLevel.MEDIUM, RiskAction.REVIEW
    return RiskLevel.HIGH, RiskAction.BLOCK


@dataclass(frozen=True)
class RiskSubject:
    """Who is being scored. Assessments are cached under the exact field values."""
    member_id: str
    referred_member_id: Optional[str] = None
    referred_user_id: Optional[str] = None
    referral_code: Optional[str] = None
    fingerprint: Optional[str] = None
    ip_hash: Optional[str] = None
    amount: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "referred_member_id": self.referred_member_id,
            "referred_user_id": self.referred_user_id,
            "referral_code": self.referral_code,
            "fingerprint": self.fingerprint,
            "ip_hash": self.ip_hash,
            "amount": str(self.amount) if self.amount is not None else None,
        }

    @property
    def cache_key(self) -> str:
        digest = hashlib.sha256(json.dumps(self.to_dict(), sort_keys=True).encode()).hexdigest()
        return f"{CACHE_PREFIX}{digest}"


@dataclass
class CheckContext:
    store: Any
    now: datetime


@dataclass(frozen=True)
class FraudRule:
    id: str
    name: str
    weight: int
    check: Callable[[RiskSubject, CheckContext], bool]
    description: str = ""
    is_active: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "weight": self.weight,
            "description": self.description, "is_active": self.is_active,
        }


class RuleRegistry:
    """Immutable set of weighted rules; ``with_rule`` returns a new registry."""

    def __init__(self, rules: Iterable[FraudRule] = ()):
        by_id: dict[str, FraudRule] = {}
        for rule in rules:
            if rule.id in by_id:
                raise ValueError(f"Duplicate fraud rule id: {rule.id}")
            if rule.weight < 0:
                raise ValueError(f"Fraud rule {rule.id} has a negative weight")
            by_id[rule.id] = rule
        self._rules = tuple(by_id.values())

    def with_rule(self, rule: FraudRule) -> "RuleRegistry":
        return RuleRegistry(self._rules + (rule,))

    def without_rule(self, rule_id: str) -> "RuleRegistry":
        return RuleRegistry(r for r in self._rules if r.id != rule_id)

    def get_rule(self, rule_id: str) -> Optional[FraudRule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def list_rules(self, active_only: bool = True) -> list[FraudRule]:
        rules = [r for r in self._rules if r.is_active or not active_only]
        rules.sort(key=lambda r: r.weight, reverse=True)
        return rules

    def __len__(self) -> int:
        return len(self._rules)


@dataclass
class RiskAssessment:
    subject: RiskSubject
    score: int
    level: RiskLevel
    action: RiskAction
    triggered_rules: list[str] = field(default_factory=list)
    triggered_names: list[str] = field(default_factory=list)
    failed_rules: list[str] = field(default_factory=list)
    assessed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def should_block(self) -> bool:
        return self.action == RiskAction.BLOCK

    @property
    def should_review(self) -> bool:
        return self.action in (RiskAction.REVIEW, RiskAction.BLOCK)

    def to_dict(self) -> dict:
        return {
            "subject": self.subject.to_dict(),
            "score": self.score,
            "level": self.level.value,
            "action": self.action.value,
            "triggered_rules": self.triggered_rules,
            "triggered_names": self.triggered_names,
            "failed_rules": self.failed_rules,
            "assessed_at": self.assessed_at.isoformat(),
        }


class FraudScorer:
    """Runs the registry's checks for a subject and caches the result.

    Assessments are stored in redis with ``setex`` for ``cache_ttl``
    seconds. Recomputing the same subject twice is harmless, so concurrent
    writers simply overwrite each other. When redis is unreachable the
    assessment is computed without the cache.
    """

    def __init__(
        self,
        registry: RuleRegistry,
        store: Any,
        cache: Redis,
        cache_ttl: float = 300.0,
        max_workers: int = 4,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.store = store
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.max_workers = max_workers
        self.clock = clock

    def assess(self, subject: RiskSubject, use_cache: bool = True) -> RiskAssessment:
        if use_cache:
            cached = self._cached(subject)
            if cached is not None:
                return cached

        context = CheckContext(store=self.store, now=self.clock())
        rules = self.registry.list_rules()
        with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as pool:
            outcomes = list(pool.map(lambda rule: self._run_check(rule, subject, context), rules))

        triggered = [rule for rule, hit, _ in outcomes if hit]
        failed = [rule.id for rule, _, error in outcomes if error]
        score = min(MAX_SCORE, sum(rule.weight for rule in triggered))
        level, action = classify(score)

        assessment = RiskAssessment(
            subject=subject,
            score=score,
            level=level,
            action=action,
            triggered_rules=[r.id for r in triggered],
            triggered_names=[r.name for r in triggered],
            failed_rules=failed,
            assessed_at=context.now,
        )
        self._store(assessment)
        logger.info(
            "risk_assessed",
            member_id=subject.member_id,
            score=score,
            level=level.value,
            triggered=assessment.triggered_rules,
        )
        return assessment

    def _run_check(
        self, rule: FraudRule, subject: RiskSubject, context: CheckContext
    ) -> tuple[FraudRule, bool, Optional[str]]:
        # A failing check counts as not triggered
        try:
            return rule, bool(rule.check(subject, context)), None
        except Exception as e:
            logger.error("fraud_check_failed", rule_id=rule.id, error=str(e))
            return rule, False, str(e)

    def _cached(self, subject: RiskSubject) -> Optional[RiskAssessment]:
        try:
            raw = self.cache.get(subject.cache_key)
        except RedisError as e:
            logger.warning("risk_cache_unavailable", operation="get", error=str(e))
            return None
        return pickle.loads(raw) if raw else None

    def _store(self, assessment: RiskAssessment) -> None:
        try:
            self.cache.setex(
                assessment.subject.cache_key,
                max(1, int(self.cache_ttl)),
                pickle.dumps(assessment),
            )
        except RedisError as e:
            logger.warning("risk_cache_unavailable", operation="setex", error=str(e))

    def invalidate(self, subject: RiskSubject) -> None:
        self.cache.delete(subject.cache_key)
