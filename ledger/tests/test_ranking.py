"""
Unit Tests for the Rank Aggregator

Tests cover:
1. Competitive ranking with deterministic positions
2. Real-time rank agreeing with a fresh snapshot
3. Snapshot staleness and read-only leaderboards
4. Graceful degradation when a scope fails to refresh
5. Windowed earnings
"""

import time
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ledger.errors import InvariantViolation, MemberNotFoundError, TransientStoreFailure
from ledger.models import (
    Commission,
    Creator,
    GLOBAL_SCOPE,
    Member,
    PaymentType,
    RankMetric,
)
from ledger.ranking import RankAggregator, SnapshotRefresher
from ledger.settings import Settings
from ledger.storage import InMemoryStorage


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
SETTINGS = Settings(_env_file=None)
REFERRALS = {"m1": 10, "m2": 10, "m3": 8, "m4": 8, "m5": 5}


def make_aggregator(store: InMemoryStorage = None) -> RankAggregator:
    store = store or InMemoryStorage(current_period="2026-03")
    store.add_creator(Creator(id="creator_1"))
    store.add_creator(Creator(id="creator_2"))
    for index, (member_id, referred) in enumerate(REFERRALS.items()):
        store.add_member(Member(
            id=member_id,
            user_id=f"u-{member_id}",
            creator_id="creator_1" if index < 3 else "creator_2",
            referral_code=f"MEMBER-AAAAA{index}",
            created_at=NOW - timedelta(days=100 - index),
        ))
        store.overwrite_member_counters(member_id, total_referred=referred)
    return RankAggregator(store, SETTINGS, clock=lambda: NOW)


class FailingStageStore(InMemoryStorage):
    """Raises while staging snapshot rows once ``fail_after`` rows went through."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_after = None

    def _stage_row(self, table, row):
        if self.fail_after is not None:
            if self.fail_after == 0:
                raise TransientStoreFailure("connection reset")
            self.fail_after -= 1
        super()._stage_row(table, row)


class TestCompetitiveRanking:
    """Tests for rank and position."""

    def test_ties_share_rank_and_skip(self):
        """10, 10, 8, 8, 5 ranks as 1, 1, 3, 3, 5."""
        aggregator = make_aggregator()

        entries = aggregator.compute_ranking(GLOBAL_SCOPE, RankMetric.TOTAL_REFERRALS)

        assert [e.member_id for e in entries] == ["m1", "m2", "m3", "m4", "m5"]
        assert [e.rank for e in entries] == [1, 1, 3, 3, 5]
        assert [e.position for e in entries] == [1, 2, 3, 4, 5]

    def test_realtime_matches_snapshot(self):
        """Each member's real-time rank equals its fresh snapshot row."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)
        board = aggregator.get_leaderboard(GLOBAL_SCOPE, RankMetric.TOTAL_REFERRALS, limit=10, now=NOW)

        for entry in board.entries:
            realtime = aggregator.realtime_rank(entry.member_id, RankMetric.TOTAL_REFERRALS, GLOBAL_SCOPE, NOW)
            assert (realtime.rank, realtime.position) == (entry.rank, entry.position)

    def test_creator_scope(self):
        """Community leaderboards only include that creator's members."""
        aggregator = make_aggregator()

        entries = aggregator.compute_ranking("creator_2", RankMetric.TOTAL_REFERRALS)

        assert [(e.member_id, e.rank) for e in entries] == [("m4", 1), ("m5", 2)]
        assert aggregator.realtime_rank("m4", RankMetric.TOTAL_REFERRALS, "creator_2").rank == 1

    def test_unknown_member(self):
        """Real-time rank for an unknown member raises."""
        aggregator = make_aggregator()

        with pytest.raises(MemberNotFoundError):
            aggregator.realtime_rank("ghost")

    def test_quarantined_members_are_excluded(self):
        """Quarantined members drop out of everyone's ranking."""
        aggregator = make_aggregator()
        aggregator.store.quarantine("m1", "test")

        entries = aggregator.compute_ranking(GLOBAL_SCOPE, RankMetric.TOTAL_REFERRALS)

        assert "m1" not in [e.member_id for e in entries]
        assert aggregator.realtime_rank("m2").rank == 1
        with pytest.raises(InvariantViolation):
            aggregator.realtime_rank("m1")


class TestSnapshot:
    """Tests for the materialized snapshot."""

    def test_empty_before_first_refresh(self):
        """No snapshot yet means an empty, stale leaderboard."""
        aggregator = make_aggregator()

        board = aggregator.get_leaderboard(now=NOW)

        assert board.entries == []
        assert board.stale is True
        assert board.generated_at is None

    def test_fresh_then_stale(self):
        """Snapshots go stale after the TTL."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)

        assert aggregator.get_leaderboard(now=NOW).stale is False
        later = NOW + timedelta(seconds=SETTINGS.snapshot_ttl_seconds + 1)
        assert aggregator.get_leaderboard(now=later).stale is True

    def test_reads_do_not_recompute(self):
        """Counter changes only show after the next refresh."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)
        aggregator.store.overwrite_member_counters("m5", total_referred=50)

        assert aggregator.get_leaderboard(now=NOW).entries[0].member_id == "m1"

        aggregator.refresh_snapshot(NOW)
        assert aggregator.get_leaderboard(now=NOW).entries[0].member_id == "m5"

    def test_limit(self):
        """Limit trims the returned entries."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)

        assert len(aggregator.get_leaderboard(limit=2, now=NOW).entries) == 2

    def test_invalidate_marks_stale_until_refreshed(self):
        """Dirty scopes report stale and refresh_dirty clears them."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)

        aggregator.invalidate("creator_1")
        assert aggregator.get_leaderboard("creator_1", now=NOW).stale is True
        assert aggregator.dirty_scopes() == {GLOBAL_SCOPE, "creator_1"}

        aggregator.refresh_dirty(NOW)
        assert aggregator.dirty_scopes() == set()
        assert aggregator.get_leaderboard("creator_1", now=NOW).stale is False

    def test_failing_scope_keeps_previous_rows(self):
        """A scope whose refresh fails keeps serving its last snapshot."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)
        before = aggregator.get_leaderboard("creator_1", now=NOW)
        original = aggregator.compute_ranking

        def flaky(scope, metric, now=None, members=None):
            if scope == "creator_1":
                raise RuntimeError("db timeout")
            return original(scope, metric, now, members=members)

        aggregator.compute_ranking = flaky
        aggregator.store.overwrite_member_counters("m3", total_referred=99)
        results = aggregator.refresh_snapshot(NOW + timedelta(minutes=1))

        assert results[GLOBAL_SCOPE] is True
        assert results["creator_1"] is False
        assert "creator_1" in aggregator.failed_scopes
        after = aggregator.get_leaderboard("creator_1", now=NOW)
        assert after.entries == before.entries
        assert aggregator.get_leaderboard(GLOBAL_SCOPE, now=NOW).entries[0].member_id == "m3"

    def test_failure_on_a_later_metric_keeps_all_metrics(self):
        """Metrics already ranked are not written when a later one fails."""
        aggregator = make_aggregator()
        aggregator.refresh_snapshot(NOW)
        before = aggregator.get_leaderboard("creator_1", RankMetric.TOTAL_REFERRALS, now=NOW)
        original = aggregator.compute_ranking

        def flaky(scope, metric, now=None, members=None):
            if scope == "creator_1" and metric == RankMetric.WINDOW_EARNINGS:
                raise RuntimeError("db timeout")
            return original(scope, metric, now, members=members)

        aggregator.compute_ranking = flaky
        aggregator.store.overwrite_member_counters("m3", total_referred=99)
        aggregator.refresh_snapshot(NOW + timedelta(minutes=1))

        after = aggregator.get_leaderboard("creator_1", RankMetric.TOTAL_REFERRALS, now=NOW)
        assert after.entries == before.entries
        assert after.generated_at == NOW

    def test_store_failure_while_writing_keeps_previous_rows(self):
        """A store error after some rows were staged leaves the old snapshot whole."""
        store = FailingStageStore(current_period="2026-03")
        aggregator = make_aggregator(store)
        aggregator.refresh_snapshot(NOW)
        before = aggregator.get_leaderboard(now=NOW)

        store.fail_after = 2
        store.overwrite_member_counters("m5", total_referred=50)
        results = aggregator.refresh_snapshot(NOW + timedelta(minutes=1))

        assert results[GLOBAL_SCOPE] is False
        after = aggregator.get_leaderboard(now=NOW)
        assert after.entries == before.entries
        assert after.generated_at == NOW
        assert sorted(e.position for e in after.entries) == [1, 2, 3, 4, 5]

        store.fail_after = None
        aggregator.refresh_snapshot(NOW + timedelta(minutes=2))
        assert aggregator.get_leaderboard(now=NOW).entries[0].member_id == "m5"


class TestWindowEarnings:
    """Tests for the windowed earnings metric."""

    def test_only_recent_commissions_count(self):
        """Commissions older than the window are left out."""
        aggregator = make_aggregator()
        for payment_id, age in (("recent", 5), ("old", 40)):
            aggregator.store.find_or_create_commission(Commission(
                payment_id=payment_id,
                member_id="m5",
                creator_id="creator_2",
                referred_member_id="x",
                sale_amount=Decimal("100"),
                member_share=Decimal("10"),
                creator_share=Decimal("70"),
                platform_share=Decimal("20"),
                payment_type=PaymentType.INITIAL,
                created_at=NOW - timedelta(days=age),
            ))

        assert aggregator.window_earnings("m5", NOW) == Decimal("10")
        entries = aggregator.compute_ranking(GLOBAL_SCOPE, RankMetric.WINDOW_EARNINGS, NOW)
        assert entries[0].member_id == "m5"
        assert entries[0].rank == 1
        assert {e.rank for e in entries[1:]} == {2}


class TestSnapshotRefresher:
    """Tests for the background refresher."""

    def test_tick_runs_full_refresh_first(self):
        """The first tick materializes every scope."""
        aggregator = make_aggregator()
        refresher = SnapshotRefresher(aggregator, poll_interval=0.01)

        refresher.tick()

        assert aggregator.last_full_refresh == NOW
        assert aggregator.get_leaderboard(now=NOW).entries

    def test_start_and_stop(self):
        """The scheduled job refreshes in the background and stops cleanly."""
        aggregator = make_aggregator()
        refresher = SnapshotRefresher(aggregator, poll_interval=0.01)

        refresher.start()
        try:
            deadline = time.monotonic() + 2
            while aggregator.last_full_refresh is None and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            refresher.stop()

        assert aggregator.last_full_refresh is not None
        assert refresher.running is False
