"""
Unit Tests for the Fraud Rule Engine

Tests cover:
1. Registry immutability and validation
2. Score capping and risk classification
3. Isolation of failing checks
4. Assessment caching
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

import fakeredis
from redis.exceptions import ConnectionError as RedisConnectionError

from fraud.rule_engine import (
    FraudRule,
    FraudScorer,
    RiskAction,
    RiskLevel,
    RiskSubject,
    RuleRegistry,
    classify,
)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
SUBJECT = RiskSubject(member_id="ref", referred_member_id="new_1", amount=Decimal("49.99"))


def rule(rule_id: str, weight: int, hit: bool = True, **kwargs) -> FraudRule:
    return FraudRule(id=rule_id, name=rule_id.title(), weight=weight, check=lambda s, c: hit, **kwargs)


def make_cache() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


def make_scorer(*rules: FraudRule, cache=None) -> FraudScorer:
    cache = cache if cache is not None else make_cache()
    return FraudScorer(RuleRegistry(rules), store=None, cache=cache, max_workers=2, clock=lambda: NOW)


class UnreachableRedis:
    def get(self, key):
        raise RedisConnectionError("connection refused")

    def setex(self, key, ttl, value):
        raise RedisConnectionError("connection refused")


class TestRuleRegistry:
    """Tests for the rule registry."""

    def test_with_rule_returns_new_registry(self):
        """Adding a rule leaves the original untouched."""
        registry = RuleRegistry([rule("a", 10)])

        extended = registry.with_rule(rule("b", 20))

        assert len(registry) == 1
        assert len(extended) == 2
        assert extended.get_rule("b").weight == 20

    def test_without_rule(self):
        """Removing a rule also returns a new registry."""
        registry = RuleRegistry([rule("a", 10), rule("b", 20)])

        assert registry.without_rule("a").get_rule("a") is None
        assert registry.get_rule("a") is not None

    def test_duplicate_ids_rejected(self):
        """Rule ids are unique."""
        with pytest.raises(ValueError, match="Duplicate"):
            RuleRegistry([rule("a", 10), rule("a", 20)])

    def test_negative_weight_rejected(self):
        """Weights cannot be negative."""
        with pytest.raises(ValueError, match="negative"):
            RuleRegistry([rule("a", -1)])

    def test_list_rules_by_weight(self):
        """Active rules are listed heaviest first."""
        registry = RuleRegistry([rule("a", 10), rule("b", 40), rule("c", 25, is_active=False)])

        assert [r.id for r in registry.list_rules()] == ["b", "a"]
        assert [r.id for r in registry.list_rules(active_only=False)] == ["b", "c", "a"]


class TestClassification:
    """Tests for score bands."""

    @pytest.mark.parametrize("score,level,action", [
        (0, RiskLevel.LOW, RiskAction.ALLOW),
        (30, RiskLevel.LOW, RiskAction.ALLOW),
        (31, RiskLevel.MEDIUM, RiskAction.REVIEW),
        (70, RiskLevel.MEDIUM, RiskAction.REVIEW),
        (71, RiskLevel.HIGH, RiskAction.BLOCK),
        (100, RiskLevel.HIGH, RiskAction.BLOCK),
    ])
    def test_bands(self, score, level, action):
        """Boundaries sit at 30 and 70."""
        assert classify(score) == (level, action)


class TestScoring:
    """Tests for FraudScorer.assess."""

    def test_triggered_weights_are_summed(self):
        """Only triggered rules contribute to the score."""
        scorer = make_scorer(rule("a", 20), rule("b", 25), rule("c", 40, hit=False))

        assessment = scorer.assess(SUBJECT)

        assert assessment.score == 45
        assert sorted(assessment.triggered_rules) == ["a", "b"]
        assert assessment.level == RiskLevel.MEDIUM
        assert assessment.should_review is True
        assert assessment.should_block is False
        assert assessment.assessed_at == NOW

    def test_score_is_capped(self):
        """Scores never exceed 100."""
        scorer = make_scorer(rule("a", 60), rule("b", 70))

        assessment = scorer.assess(SUBJECT)

        assert assessment.score == 100
        assert assessment.should_block is True

    def test_inactive_rules_are_skipped(self):
        """Inactive rules never run."""
        scorer = make_scorer(rule("a", 90, is_active=False))

        assert scorer.assess(SUBJECT).score == 0

    def test_failing_check_counts_as_not_triggered(self):
        """An exception in one check does not abort the assessment."""
        def broken(subject, ctx):
            raise RuntimeError("lookup failed")

        scorer = make_scorer(rule("a", 20), FraudRule(id="broken", name="Broken", weight=50, check=broken))

        assessment = scorer.assess(SUBJECT)

        assert assessment.score == 20
        assert assessment.failed_rules == ["broken"]
        assert "broken" not in assessment.triggered_rules

    def test_to_dict(self):
        """Assessments serialize to plain values."""
        body = make_scorer(rule("a", 20)).assess(SUBJECT).to_dict()

        assert body["score"] == 20
        assert body["level"] == "low"
        assert body["action"] == "allow"
        assert body["subject"]["amount"] == "49.99"


class TestCaching:
    """Tests for assessment caching."""

    def test_cached_result_is_reused(self):
        """A second assessment within the TTL does not rerun checks."""
        calls = []

        def counting(subject, ctx):
            calls.append(subject.member_id)
            return True

        scorer = make_scorer(FraudRule(id="count", name="Count", weight=10, check=counting))

        first = scorer.assess(SUBJECT)
        second = scorer.assess(SUBJECT)

        assert second == first
        assert len(calls) == 1

        scorer.assess(SUBJECT, use_cache=False)
        assert len(calls) == 2

    def test_entries_carry_the_ttl(self):
        """Assessments are written with setex so redis expires them."""
        scorer = make_scorer(rule("a", 10))

        scorer.assess(SUBJECT)

        assert 0 < scorer.cache.ttl(SUBJECT.cache_key) <= 300

    def test_key_depends_on_every_field(self):
        """A different amount is a different cache entry."""
        other = RiskSubject(member_id="ref", referred_member_id="new_1", amount=Decimal("50.00"))

        assert other.cache_key != SUBJECT.cache_key
        assert SUBJECT.cache_key.startswith("fraud:risk:")

    def test_invalidate(self):
        """Invalidating a subject forces a fresh assessment."""
        calls = []

        def counting(subject, ctx):
            calls.append(1)
            return False

        scorer = make_scorer(FraudRule(id="count", name="Count", weight=10, check=counting))
        scorer.assess(SUBJECT)

        scorer.invalidate(SUBJECT)
        scorer.assess(SUBJECT)

        assert len(calls) == 2

    def test_last_writer_wins(self):
        """Scorers sharing a cache overwrite each other's entry."""
        cache = make_cache()
        make_scorer(rule("a", 10), cache=cache).assess(SUBJECT)
        make_scorer(rule("b", 50), cache=cache).assess(SUBJECT, use_cache=False)

        assert make_scorer(cache=cache).assess(SUBJECT).score == 50

    def test_unreachable_cache_still_scores(self):
        """Redis errors fall through to a direct assessment."""
        scorer = make_scorer(rule("a", 40), cache=UnreachableRedis())

        assessment = scorer.assess(SUBJECT)

        assert assessment.score == 40
        assert assessment.level == RiskLevel.MEDIUM
