"""
Computed match minute for live matches.

The minute is derived from the per-period kickoff timestamps and written with
the low-trust ``computed`` source, so any feed or provider minute outranks it.
"""
from __future__ import annotations

from typing import Optional

from coordination.repository import LiveMatchRow, MatchRepository
from coordination.write_gate import WriteGate
from jobs.runner import JobContext
from shared.models.domain import now_ts
from shared.models.enums import MatchStatus, WriteStatus

COMPUTED_SOURCE = "computed"

FIRST_HALF_CAP = 45
SECOND_HALF_CAP = 90
OVERTIME_CAP = 120


def _elapsed_minute(now: int, since: int) -> int:
    return max(0, now - since) // 60 + 1


def compute_minute(row: LiveMatchRow, now: int) -> Optional[int]:
    """Minute to display for ``row`` at epoch second ``now``; None when unknown."""
    if row.status == MatchStatus.FIRST_HALF:
        start = row.first_half_kickoff_ts or row.kickoff_ts
        return min(FIRST_HALF_CAP, _elapsed_minute(now, start))
    if row.status == MatchStatus.HALF_TIME:
        return FIRST_HALF_CAP
    if row.status == MatchStatus.SECOND_HALF:
        if row.second_half_kickoff_ts is None:
            return None
        return min(SECOND_HALF_CAP, FIRST_HALF_CAP + _elapsed_minute(now, row.second_half_kickoff_ts))
    if row.status == MatchStatus.OVERTIME:
        if row.overtime_kickoff_ts is None:
            return None
        return min(OVERTIME_CAP, SECOND_HALF_CAP + _elapsed_minute(now, row.overtime_kickoff_ts))
    return None


class MatchMinuteJob:
    def __init__(self, repository: MatchRepository, gate: WriteGate, batch_size: int = 100) -> None:
        self._repo = repository
        self._gate = gate
        self._batch_size = batch_size

    async def __call__(self, ctx: JobContext) -> int:
        rows = await self._repo.live_matches(self._batch_size)
        now = now_ts()
        written = 0
        for row in rows:
            minute = compute_minute(row, now)
            if minute is None or minute == row.minute:
                continue
            result = await self._gate.update_minute(row.match_id, minute, source=COMPUTED_SOURCE, timestamp=now)
            if result.status == WriteStatus.SUCCESS and result.fields_updated:
                written += 1
        ctx.log.info("match_minute_done", live=len(rows), written=written)
        return written
