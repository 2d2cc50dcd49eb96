"""
Phase buckets for the reconciliation scheduler.
Each bucket selects candidate match ids for one phase of play at its own cadence.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Select, func, select

from shared.config import Settings, get_settings
from shared.errors import RegistryError
from shared.models.enums import BucketKind, MatchStatus
from shared.models.orm import MatchORM

# NOT_STARTED rows with a kickoff older than this are treated as abandoned data.
PRE_START_LOOKBACK_S = 3 * 3600
FIRST_HALF_S = 45 * 60


@dataclass(frozen=True)
class PhaseBucket:
    name: str
    statuses: frozenset[MatchStatus]
    interval_s: float
    limit: int
    kind: BucketKind = BucketKind.PHASE
    min_minute: Optional[int] = None
    kickoff_within_s: Optional[int] = None      # kickoff_ts <= now + s
    kickoff_overdue: bool = False               # kickoff_ts <= now
    kickoff_lookback_s: Optional[int] = None    # kickoff_ts >= now - s
    halftime_for_s: Optional[int] = None        # first half kicked off >= 45 min + s ago
    updated_within_s: Optional[int] = None      # updated_at >= now - s

    def __post_init__(self) -> None:
        if not self.statuses:
            raise RegistryError(f"bucket {self.name!r} selects no statuses")
        if self.interval_s <= 0 or self.limit <= 0:
            raise RegistryError(f"bucket {self.name!r} needs a positive interval and limit")

    def candidate_statement(self, now: datetime) -> Select:
        """Ids in this bucket, least recently updated first, bounded by ``limit``."""
        now_ts = int(now.timestamp())
        stmt = select(MatchORM.external_id).where(
            MatchORM.status.in_(sorted(int(s) for s in self.statuses))
        )
        if self.min_minute is not None:
            stmt = stmt.where(MatchORM.minute >= self.min_minute)
        if self.kickoff_within_s is not None:
            stmt = stmt.where(MatchORM.kickoff_ts <= now_ts + self.kickoff_within_s)
        if self.kickoff_overdue:
            stmt = stmt.where(MatchORM.kickoff_ts <= now_ts)
        if self.kickoff_lookback_s is not None:
            stmt = stmt.where(MatchORM.kickoff_ts >= now_ts - self.kickoff_lookback_s)
        if self.halftime_for_s is not None:
            first_half_ts = func.coalesce(MatchORM.first_half_kickoff_ts, MatchORM.kickoff_ts)
            stmt = stmt.where(first_half_ts <= now_ts - FIRST_HALF_S - self.halftime_for_s)
        if self.updated_within_s is not None:
            stmt = stmt.where(MatchORM.updated_at >= now - timedelta(seconds=self.updated_within_s))
        return stmt.order_by(MatchORM.updated_at.asc(), MatchORM.external_id.asc()).limit(self.limit)


def build_bucket_table(settings: Settings | None = None) -> tuple[PhaseBucket, ...]:
    """Base phase buckets followed by the phase-transition watchers."""
    s = settings or get_settings()
    limit = s.reconcile_enqueue_limit
    phases = (
        PhaseBucket(
            name="pre_start",
            statuses=frozenset({MatchStatus.NOT_STARTED}),
            interval_s=s.pre_start_interval_s,
            limit=limit,
            kickoff_within_s=s.pre_start_window_s,
            kickoff_lookback_s=PRE_START_LOOKBACK_S,
        ),
        PhaseBucket(
            name="first_half",
            statuses=frozenset({MatchStatus.FIRST_HALF}),
            interval_s=s.first_half_interval_s,
            limit=limit,
        ),
        PhaseBucket(
            name="halftime",
            statuses=frozenset({MatchStatus.HALF_TIME}),
            interval_s=s.halftime_interval_s,
            limit=limit,
        ),
        PhaseBucket(
            name="second_half",
            statuses=frozenset({MatchStatus.SECOND_HALF}),
            interval_s=s.second_half_interval_s,
            limit=limit,
        ),
        PhaseBucket(
            name="extra_time",
            statuses=frozenset({MatchStatus.OVERTIME, MatchStatus.PENALTY_SHOOTOUT}),
            interval_s=s.extra_time_interval_s,
            limit=limit,
        ),
        PhaseBucket(
            name="recently_finished",
            statuses=frozenset({MatchStatus.END}),
            interval_s=s.recently_finished_interval_s,
            limit=limit,
            updated_within_s=s.recently_finished_window_s,
        ),
    )
    watchers = (
        PhaseBucket(
            name="first_half_ending",
            statuses=frozenset({MatchStatus.FIRST_HALF}),
            interval_s=s.watcher_interval_s,
            limit=limit,
            kind=BucketKind.WATCHER,
            min_minute=s.first_half_ending_minute,
        ),
        PhaseBucket(
            name="second_half_ending",
            statuses=frozenset({MatchStatus.SECOND_HALF}),
            interval_s=s.watcher_interval_s,
            limit=limit,
            kind=BucketKind.WATCHER,
            min_minute=s.second_half_ending_minute,
        ),
        PhaseBucket(
            name="halftime_ending",
            statuses=frozenset({MatchStatus.HALF_TIME}),
            interval_s=s.watcher_interval_s,
            limit=limit,
            kind=BucketKind.WATCHER,
            halftime_for_s=s.halftime_ending_after_s,
        ),
        PhaseBucket(
            name="kickoff_overdue",
            statuses=frozenset({MatchStatus.NOT_STARTED}),
            interval_s=s.kickoff_overdue_interval_s,
            limit=limit,
            kind=BucketKind.WATCHER,
            kickoff_overdue=True,
            kickoff_lookback_s=PRE_START_LOOKBACK_S,
        ),
    )
    table = phases + watchers
    names = [b.name for b in table]
    if len(names) != len(set(names)):
        raise RegistryError("duplicate bucket names")
    return table
