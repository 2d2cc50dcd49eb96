"""Tests for the computed-minute job and the stale live finisher."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from coordination.repository import LiveMatchRow
from coordination.write_gate import WriteGate
from jobs.finisher import StaleLiveFinisher
from jobs.minute import MatchMinuteJob, compute_minute
from shared.models.enums import MatchStatus
from tests.conftest import FakeMatchRepository

KICKOFF = 1_700_000_000


def _row(status: MatchStatus, minute=None, first=KICKOFF, second=None, overtime=None, match_id: int = 1) -> LiveMatchRow:
    return LiveMatchRow(
        match_id=match_id,
        status=status,
        minute=minute,
        kickoff_ts=KICKOFF,
        first_half_kickoff_ts=first,
        second_half_kickoff_ts=second,
        overtime_kickoff_ts=overtime,
    )


def _ctx() -> MagicMock:
    return MagicMock()


# ── compute_minute ──────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "row, now, expected",
    [
        (_row(MatchStatus.FIRST_HALF), KICKOFF, 1),
        (_row(MatchStatus.FIRST_HALF), KICKOFF + 59, 1),
        (_row(MatchStatus.FIRST_HALF), KICKOFF + 60 * 23 + 5, 24),
        (_row(MatchStatus.FIRST_HALF), KICKOFF + 60 * 50, 45),
        (_row(MatchStatus.FIRST_HALF, first=None), KICKOFF + 600, 11),
        (_row(MatchStatus.HALF_TIME), KICKOFF + 60 * 55, 45),
        (_row(MatchStatus.SECOND_HALF, second=KICKOFF + 3600), KICKOFF + 3600 + 60 * 10, 56),
        (_row(MatchStatus.SECOND_HALF, second=KICKOFF + 3600), KICKOFF + 3600 + 60 * 70, 90),
        (_row(MatchStatus.SECOND_HALF, second=None), KICKOFF + 7200, None),
        (_row(MatchStatus.OVERTIME, overtime=KICKOFF + 7000), KICKOFF + 7000 + 60 * 5, 96),
        (_row(MatchStatus.PENALTY_SHOOTOUT), KICKOFF + 9000, None),
    ],
)
def test_compute_minute(row: LiveMatchRow, now: int, expected) -> None:
    assert compute_minute(row, now) == expected


# ── MatchMinuteJob ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_minute_job_writes_only_changes(gate: WriteGate, repo: FakeMatchRepository, monkeypatch) -> None:
    monkeypatch.setattr("jobs.minute.now_ts", lambda: KICKOFF + 60 * 9)
    repo.live_rows = [
        _row(MatchStatus.FIRST_HALF, minute=3, match_id=1),
        _row(MatchStatus.FIRST_HALF, minute=10, match_id=2),
    ]

    written = await MatchMinuteJob(repo, gate)(_ctx())

    assert written == 1
    assert repo.rows[1]["minute"] == 10
    assert repo.rows[1]["minute_source"] == "computed"
    assert repo.persist_calls == 1


@pytest.mark.asyncio
async def test_computed_minute_loses_to_feed(gate: WriteGate, repo: FakeMatchRepository, monkeypatch) -> None:
    monkeypatch.setattr("jobs.minute.now_ts", lambda: KICKOFF + 60 * 9)
    repo.rows[1].update(minute=8, minute_source="feed", minute_timestamp=KICKOFF)
    repo.live_rows = [_row(MatchStatus.FIRST_HALF, minute=8, match_id=1)]

    assert await MatchMinuteJob(repo, gate)(_ctx()) == 0
    assert repo.rows[1]["minute"] == 8


# ── StaleLiveFinisher ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_finisher_ends_stuck_matches(gate: WriteGate, repo: FakeMatchRepository) -> None:
    repo.rows[2].update(status=int(MatchStatus.SECOND_HALF), status_source="api", status_timestamp=1)
    repo.rows[3].update(status=int(MatchStatus.SECOND_HALF), status_source="admin", status_timestamp=1)
    repo.stuck_ids = [2, 3]

    counts = await StaleLiveFinisher(repo, gate)(_ctx())

    assert repo.rows[2]["status"] == MatchStatus.END
    assert repo.rows[2]["status_source"] == "auto_finish"
    # admin-set status outranks auto_finish; only last_event_ts lands
    assert repo.rows[3]["status"] == MatchStatus.SECOND_HALF
    assert counts == {"success": 2}
