"""Finishes matches that are still marked live long after they must have ended."""
from __future__ import annotations

from coordination.repository import MatchRepository
from coordination.write_gate import WriteGate
from jobs.runner import JobContext
from shared.models.domain import now_ts
from shared.models.enums import WriteStatus

AUTO_FINISH_SOURCE = "auto_finish"

MIN_MINUTE = 90
SOFT_AGE_S = 2 * 3600
HARD_AGE_S = 4 * 3600


class StaleLiveFinisher:
    def __init__(self, repository: MatchRepository, gate: WriteGate, limit: int = 200) -> None:
        self._repo = repository
        self._gate = gate
        self._limit = limit

    async def __call__(self, ctx: JobContext) -> dict[str, int]:
        ids = await self._repo.stuck_live_ids(
            now_ts(),
            min_minute=MIN_MINUTE,
            soft_age_s=SOFT_AGE_S,
            hard_age_s=HARD_AGE_S,
            limit=self._limit,
        )
        counts: dict[str, int] = {}
        for match_id in ids:
            result = await self._gate.finish_match(match_id, source=AUTO_FINISH_SOURCE)
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
            if result.status == WriteStatus.SUCCESS:
                ctx.log.info("stale_live_match_finished", match_id=match_id)
        if ids:
            ctx.log.info("stale_live_finisher_done", candidates=len(ids), **counts)
        return counts
