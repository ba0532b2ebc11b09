"""Leaderboards.

Two read paths with a clear consistency contract:

* ``get_leaderboard`` serves the periodically materialized snapshot
  (stale-but-fast). Only ``refresh_snapshot`` writes it.
* ``realtime_rank`` computes one member's standing from current data
  (exact-but-slower) and agrees with what a fresh snapshot would show.

Ranking is competitive: equal values share a rank and the next distinct
value skips (10, 10, 8, 8, 5 -> 1, 1, 3, 3, 5). ``position`` breaks ties by
earlier member creation, then member id, so display order is deterministic.
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .errors import InvariantViolation, MemberNotFoundError
from .logging_config import get_logger
from .models import (
    CommissionStatus,
    GLOBAL_SCOPE,
    Leaderboard,
    LeaderboardEntry,
    Member,
    RankMetric,
    RealtimeRank,
    SnapshotRow,
    utcnow,
)
from .settings import Settings, settings as default_settings
from .storage import InMemoryStorage

logger = get_logger(__name__)


class RankAggregator:
    def __init__(
        self,
        store: InMemoryStorage,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.clock = clock
        self._dirty: set[str] = set()
        self._dirty_lock = threading.Lock()
        self.last_full_refresh: Optional[datetime] = None
        self.failed_scopes: dict[str, str] = {}

    # -- metrics -------------------------------------------------------------

    def metric_value(self, member: Member, metric: RankMetric, now: Optional[datetime] = None) -> Decimal:
        if metric == RankMetric.LIFETIME_EARNINGS:
            return member.lifetime_earnings
        if metric == RankMetric.TOTAL_REFERRALS:
            return Decimal(member.total_referred)
        return self.window_earnings(member.id, now or self.clock())

    def window_earnings(self, member_id: str, now: datetime) -> Decimal:
        since = now - timedelta(days=self.settings.leaderboard_window_days)
        total = Decimal("0")
        for commission in self.store.commissions_for_member(member_id, since=since):
            if commission.status == CommissionStatus.REFUNDED or commission.created_at > now:
                continue
            reversed_share = sum(
                (r.member_share_reversed for r in self.store.refunds_for_commission(commission.id)),
                Decimal("0"),
            )
            total += commission.member_share - reversed_share
        return total

    def _members_in_scope(self, scope: str) -> list[Member]:
        creator_id = None if scope == GLOBAL_SCOPE else scope
        return [
            m for m in self.store.list_members(creator_id)
            if not self.store.is_quarantined(m.id)
        ]

    # -- snapshot ------------------------------------------------------------

    def compute_ranking(
        self,
        scope: str,
        metric: RankMetric,
        now: Optional[datetime] = None,
        members: Optional[list[Member]] = None,
    ) -> list[LeaderboardEntry]:
        now = now or self.clock()
        if members is None:
            members = self._members_in_scope(scope)
        scored = [(self.metric_value(m, metric, now), m) for m in members]
        scored.sort(key=lambda item: (-item[0], item[1].created_at, item[1].id))

        entries: list[LeaderboardEntry] = []
        rank = 0
        previous: Optional[Decimal] = None
        for index, (value, member) in enumerate(scored):
            if previous is None or value != previous:
                rank = index + 1
                previous = value
            entries.append(LeaderboardEntry(
                member_id=member.id, value=value, rank=rank, position=index + 1,
            ))
        return entries

    def scopes(self) -> list[str]:
        return [GLOBAL_SCOPE] + [c.id for c in self.store.list_creators()]

    def refresh_snapshot(self, now: Optional[datetime] = None, scopes: Optional[list[str]] = None) -> dict[str, bool]:
        """Recompute and persist rankings. A scope that fails keeps serving
        its previous rows."""
        now = now or self.clock()
        full = scopes is None
        targets = self.scopes() if full else scopes
        results: dict[str, bool] = {}

        for scope in targets:
            try:
                self._refresh_scope(scope, now)
            except Exception as e:
                logger.exception("snapshot_refresh_failed", scope=scope)
                self.failed_scopes[scope] = str(e)
                results[scope] = False
                continue
            self.failed_scopes.pop(scope, None)
            with self._dirty_lock:
                self._dirty.discard(scope)
            results[scope] = True

        if full:
            self.last_full_refresh = now
        logger.info(
            "snapshot_refreshed",
            scopes=len(targets),
            failed=sum(1 for ok in results.values() if not ok),
        )
        return results

    def _refresh_scope(self, scope: str, now: datetime) -> None:
        """Rank every metric first, then write the scope in one store call."""
        members = {m.id: m for m in self._members_in_scope(scope)}
        rows: dict[RankMetric, list[SnapshotRow]] = {}
        for metric in RankMetric:
            rows[metric] = [
                SnapshotRow(
                    scope=scope,
                    metric=metric,
                    member_id=entry.member_id,
                    value=entry.value,
                    rank=entry.rank,
                    position=entry.position,
                    member_created_at=members[entry.member_id].created_at,
                    generated_at=now,
                )
                for entry in self.compute_ranking(scope, metric, now, members=list(members.values()))
            ]
        self.store.replace_snapshot(scope, rows, now)

    def invalidate(self, creator_id: Optional[str] = None) -> None:
        with self._dirty_lock:
            self._dirty.add(GLOBAL_SCOPE)
            if creator_id:
                self._dirty.add(creator_id)

    def dirty_scopes(self) -> set[str]:
        with self._dirty_lock:
            return set(self._dirty)

    def refresh_dirty(self, now: Optional[datetime] = None) -> dict[str, bool]:
        dirty = sorted(self.dirty_scopes())
        if not dirty:
            return {}
        return self.refresh_snapshot(now, scopes=dirty)

    def needs_full_refresh(self, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        if self.last_full_refresh is None:
            return True
        return (now - self.last_full_refresh).total_seconds() >= self.settings.snapshot_ttl_seconds

    def get_leaderboard(
        self,
        scope: str = GLOBAL_SCOPE,
        metric: RankMetric = RankMetric.TOTAL_REFERRALS,
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> Leaderboard:
        """Read-only view of the last successful snapshot."""
        now = now or self.clock()
        rows, generated_at = self.store.snapshot(scope, metric)
        stale = (
            generated_at is None
            or (now - generated_at).total_seconds() > self.settings.snapshot_ttl_seconds
            or scope in self.dirty_scopes()
        )
        entries = [
            LeaderboardEntry(member_id=r.member_id, value=r.value, rank=r.rank, position=r.position)
            for r in rows
            if not self.store.is_quarantined(r.member_id)
        ]
        return Leaderboard(
            scope=scope,
            metric=metric,
            entries=entries[:limit],
            generated_at=generated_at,
            stale=stale,
        )

    # -- real time -----------------------------------------------------------

    def realtime_rank(
        self,
        member_id: str,
        metric: RankMetric = RankMetric.TOTAL_REFERRALS,
        scope: str = GLOBAL_SCOPE,
        now: Optional[datetime] = None,
    ) -> RealtimeRank:
        """rank = 1 + members strictly ahead; position additionally counts
        equal values with an earlier creation time."""
        now = now or self.clock()
        member = self.store.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        if self.store.is_quarantined(member_id):
            raise InvariantViolation(f"Member {member_id} is quarantined", record_id=member_id)
        if scope != GLOBAL_SCOPE and member.creator_id != scope:
            raise MemberNotFoundError(f"Member {member_id} is not part of {scope}")

        mine = self.metric_value(member, metric, now)
        my_key = (member.created_at, member.id)
        ahead = 0
        ahead_or_tied_earlier = 0
        for other in self._members_in_scope(scope):
            if other.id == member.id:
                continue
            value = self.metric_value(other, metric, now)
            if value > mine:
                ahead += 1
                ahead_or_tied_earlier += 1
            elif value == mine and (other.created_at, other.id) < my_key:
                ahead_or_tied_earlier += 1

        return RealtimeRank(
            member_id=member_id,
            scope=scope,
            metric=metric,
            value=mine,
            rank=ahead + 1,
            position=ahead_or_tied_earlier + 1,
        )


class SnapshotRefresher:
    """Keeps the leaderboard snapshot fresh from an APScheduler interval job.

    Each run does a full refresh once the snapshot is older than
    ``snapshot_ttl_seconds`` and otherwise refreshes only dirty scopes.
    """

    JOB_ID = "refresh_snapshot"

    def __init__(self, aggregator: RankAggregator, poll_interval: Optional[float] = None):
        self.aggregator = aggregator
        self.poll_interval = poll_interval or min(aggregator.settings.snapshot_ttl_seconds, 5.0)
        self._scheduler: Optional[BackgroundScheduler] = None

    def tick(self) -> None:
        try:
            if self.aggregator.needs_full_refresh():
                self.aggregator.refresh_snapshot()
            else:
                self.aggregator.refresh_dirty()
        except Exception:
            logger.exception("snapshot_refresher_tick_failed")

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.poll_interval,
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("snapshot_refresher_started", interval=self.poll_interval)

    def stop(self, wait: bool = True) -> None:
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("snapshot_refresher_stopped")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)
