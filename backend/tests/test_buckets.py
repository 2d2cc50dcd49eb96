"""Tests for the phase bucket table and its candidate SQL."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql

from scheduler.buckets import PhaseBucket, build_bucket_table
from shared.config import Settings
from shared.errors import RegistryError
from shared.models.enums import BucketKind, MatchStatus

NOW = datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc)


def _compile(bucket: PhaseBucket):
    return bucket.candidate_statement(NOW).compile(dialect=postgresql.dialect())


@pytest.fixture
def table() -> dict[str, PhaseBucket]:
    return {b.name: b for b in build_bucket_table(Settings())}


def test_table_has_phases_and_watchers(table: dict[str, PhaseBucket]) -> None:
    phases = {n for n, b in table.items() if b.kind == BucketKind.PHASE}
    watchers = {n for n, b in table.items() if b.kind == BucketKind.WATCHER}
    assert phases == {"pre_start", "first_half", "halftime", "second_half", "extra_time", "recently_finished"}
    assert watchers == {"first_half_ending", "second_half_ending", "halftime_ending", "kickoff_overdue"}


def test_volatile_phases_poll_faster_than_quiet_ones(table: dict[str, PhaseBucket]) -> None:
    assert table["first_half"].interval_s < table["halftime"].interval_s
    assert table["second_half"].interval_s < table["pre_start"].interval_s
    assert table["recently_finished"].interval_s > table["pre_start"].interval_s


def test_watchers_are_tighter_than_their_base_bucket(table: dict[str, PhaseBucket]) -> None:
    assert table["first_half_ending"].interval_s < table["first_half"].interval_s
    assert table["halftime_ending"].interval_s < table["halftime"].interval_s
    assert table["kickoff_overdue"].interval_s < table["pre_start"].interval_s


def test_candidates_ordered_oldest_updated_first(table: dict[str, PhaseBucket]) -> None:
    sql = str(_compile(table["first_half"]))
    assert "ORDER BY matches.updated_at ASC, matches.external_id ASC" in sql
    assert "LIMIT" in sql


def test_first_half_ending_filters_on_minute(table: dict[str, PhaseBucket]) -> None:
    compiled = _compile(table["first_half_ending"])
    assert "matches.minute >=" in str(compiled)
    assert 40 in compiled.params.values()


def test_halftime_ending_measured_from_first_half_kickoff(table: dict[str, PhaseBucket]) -> None:
    compiled = _compile(table["halftime_ending"])
    sql = str(compiled)
    assert "coalesce(matches.first_half_kickoff_ts, matches.kickoff_ts) <=" in sql
    # resubmitting HALF_TIME refreshes status_timestamp, so it cannot drive this watcher
    assert "status_timestamp" not in sql
    assert int(NOW.timestamp()) - 45 * 60 - 720 in compiled.params.values()


def test_kickoff_overdue_bounds_kickoff_both_ways(table: dict[str, PhaseBucket]) -> None:
    compiled = _compile(table["kickoff_overdue"])
    sql = str(compiled)
    assert "matches.kickoff_ts <=" in sql
    assert "matches.kickoff_ts >=" in sql
    assert int(NOW.timestamp()) in compiled.params.values()


def test_extra_time_covers_overtime_and_penalties(table: dict[str, PhaseBucket]) -> None:
    assert table["extra_time"].statuses == {MatchStatus.OVERTIME, MatchStatus.PENALTY_SHOOTOUT}


def test_bucket_validation() -> None:
    with pytest.raises(RegistryError):
        PhaseBucket(name="empty", statuses=frozenset(), interval_s=1, limit=1)
    with pytest.raises(RegistryError):
        PhaseBucket(name="zero", statuses=frozenset({MatchStatus.END}), interval_s=0, limit=1)
