"""
WriteGate: the single path through which any writer changes a match row.

Every write takes the match's advisory lock without waiting, reads the stored
values and provenance, rejects attempts to reopen a finished match, keeps only
updates that win priority/timestamp arbitration, persists the winners in one
transaction and then notifies downstream consumers.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable, Mapping, Optional, Sequence

from coordination.events import EventDispatcher
from coordination.locks import LockKey, LockManager
from coordination.registry import SourcePriorityTable
from coordination.repository import MatchRepository, MatchSnapshot, Provenance
from shared.config import Settings, get_settings
from shared.models.domain import FieldUpdate, WriteResult, now_ts
from shared.models.enums import TERMINAL_STATUS, MatchField, MatchStatus, WriteStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    WRITE_FIELDS_ACCEPTED,
    WRITE_FIELDS_DROPPED,
    WRITE_LATENCY,
    WRITE_RESULTS,
)

logger = get_logger(__name__)


class WriteGate:
    def __init__(
        self,
        locks: LockManager,
        repository: MatchRepository,
        priorities: SourcePriorityTable,
        events: EventDispatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._locks = locks
        self._repo = repository
        self._priorities = priorities
        self._events = events or EventDispatcher()
        self._settings = settings or get_settings()

    @property
    def events(self) -> EventDispatcher:
        return self._events

    async def apply(
        self,
        match_id: object,
        updates: Sequence[FieldUpdate],
        source: str = "unknown",
    ) -> WriteResult:
        """
        Apply ``updates`` to one match.

        Raises InvalidMatchId for ids outside the lock key space and
        PriorityMismatch when an explicit priority disagrees with its source's
        configured level. Lock contention, immutability and arbitration
        losses come back as WriteResult statuses; database errors propagate
        after the lock is released.
        """
        key = LockKey.for_match(match_id)
        mid = key.id
        if not updates:
            return WriteResult(status=WriteStatus.SUCCESS, match_id=mid)
        for upd in updates:
            self._priorities.resolve(upd)

        async with self._locks.hold(key) as handle:
            if handle is None:
                logger.debug("write_rejected_locked", match_id=mid, source=source)
                return self._record(WriteResult(status=WriteStatus.REJECTED_LOCKED, match_id=mid), source)

            started = time.perf_counter()
            async with self._repo.transaction(handle.connection) as conn:
                snapshot = await self._repo.load(conn, mid, [u.field for u in updates])
                if snapshot is None:
                    logger.warning("write_match_not_found", match_id=mid, source=source)
                    return self._record(
                        WriteResult(status=WriteStatus.NOT_FOUND, match_id=mid, reason="match does not exist"),
                        source,
                    )

                reopening = self._reopening_update(snapshot, updates)
                if reopening is not None:
                    logger.warning(
                        "write_rejected_immutable",
                        match_id=mid,
                        source=source,
                        attempted_status=int(reopening.value),
                    )
                    return self._record(
                        WriteResult(
                            status=WriteStatus.REJECTED_IMMUTABLE,
                            match_id=mid,
                            reason="match has ended",
                        ),
                        source,
                    )

                accepted = self._arbitrate(snapshot, updates)
                if not accepted:
                    logger.debug("write_rejected_stale", match_id=mid, source=source, proposed=len(updates))
                    return self._record(
                        WriteResult(
                            status=WriteStatus.REJECTED_STALE,
                            match_id=mid,
                            reason="no update outranked stored provenance",
                        ),
                        source,
                    )

                await self._repo.persist(conn, mid, accepted, source)

            WRITE_LATENCY.labels(source=source).observe(time.perf_counter() - started)
            fields = [u.field for u in accepted]
            for f in fields:
                WRITE_FIELDS_ACCEPTED.labels(field=f.value).inc()
            logger.info(
                "write_applied",
                match_id=mid,
                source=source,
                fields=[f.value for f in fields],
            )
            self._events.emit(mid, fields, {u.field: u.value for u in accepted})
            return self._record(WriteResult(status=WriteStatus.SUCCESS, match_id=mid, fields_updated=fields), source)

    # ── Arbitration ─────────────────────────────────────────────────────

    @staticmethod
    def _reopening_update(snapshot: MatchSnapshot, updates: Iterable[FieldUpdate]) -> Optional[FieldUpdate]:
        """First status update that would move an ended match to another status."""
        if not snapshot.is_terminal:
            return None
        for upd in updates:
            if upd.field == MatchField.STATUS and upd.value != TERMINAL_STATUS:
                return upd
        return None

    def _arbitrate(self, snapshot: MatchSnapshot, updates: Sequence[FieldUpdate]) -> list[FieldUpdate]:
        """
        Keep updates that beat the stored provenance, applying them in order so
        that a later update for the same field competes with an earlier winner.
        """
        current: dict[MatchField, tuple[int, Optional[int]]] = {}
        winners: dict[MatchField, FieldUpdate] = {}
        for upd in updates:
            if upd.field == MatchField.STATUS and snapshot.is_terminal:
                # Re-asserting the final status is a no-op.
                WRITE_FIELDS_DROPPED.labels(field=upd.field.value).inc()
                continue
            if upd.field not in current:
                stored: Provenance = snapshot.provenance_of(upd.field)
                current[upd.field] = (self._priorities.of(stored.source), stored.timestamp)
            stored_priority, stored_ts = current[upd.field]
            priority = self._priorities.resolve(upd)
            if priority > stored_priority or (
                priority == stored_priority and (stored_ts is None or upd.timestamp >= stored_ts)
            ):
                current[upd.field] = (priority, upd.timestamp)
                winners.pop(upd.field, None)
                winners[upd.field] = upd
            else:
                WRITE_FIELDS_DROPPED.labels(field=upd.field.value).inc()
                logger.debug(
                    "field_update_dropped",
                    match_id=snapshot.match_id,
                    field=upd.field.value,
                    source=upd.source,
                    priority=priority,
                    stored_priority=stored_priority,
                )
        return list(winners.values())

    @staticmethod
    def _record(result: WriteResult, source: str) -> WriteResult:
        WRITE_RESULTS.labels(status=result.status.value, source=source).inc()
        return result

    # ── Convenience producers ───────────────────────────────────────────

    async def update_status(
        self, match_id: object, status: MatchStatus | int, source: str, timestamp: int | None = None
    ) -> WriteResult:
        ts = timestamp if timestamp is not None else now_ts()
        return await self.apply(
            match_id,
            [FieldUpdate(field=MatchField.STATUS, value=status, source=source, timestamp=ts)],
            source=source,
        )

    async def update_score(
        self,
        match_id: object,
        home: int,
        away: int,
        source: str,
        timestamp: int | None = None,
    ) -> WriteResult:
        ts = timestamp if timestamp is not None else now_ts()
        return await self.apply(
            match_id,
            [
                FieldUpdate(field=MatchField.HOME_SCORE, value=home, source=source, timestamp=ts),
                FieldUpdate(field=MatchField.AWAY_SCORE, value=away, source=source, timestamp=ts),
            ],
            source=source,
        )

    async def update_minute(
        self, match_id: object, minute: int, source: str, timestamp: int | None = None
    ) -> WriteResult:
        ts = timestamp if timestamp is not None else now_ts()
        return await self.apply(
            match_id,
            [FieldUpdate(field=MatchField.MINUTE, value=minute, source=source, timestamp=ts)],
            source=source,
        )

    async def finish_match(
        self,
        match_id: object,
        source: str,
        final_score: tuple[int, int] | None = None,
        timestamp: int | None = None,
    ) -> WriteResult:
        """Move a match to END, optionally with its final score, in one write."""
        ts = timestamp if timestamp is not None else now_ts()
        updates = [
            FieldUpdate(field=MatchField.STATUS, value=MatchStatus.END, source=source, timestamp=ts),
            FieldUpdate(field=MatchField.LAST_EVENT_TS, value=ts, source=source, timestamp=ts),
        ]
        if final_score is not None:
            home, away = final_score
            updates.append(FieldUpdate(field=MatchField.HOME_SCORE, value=home, source=source, timestamp=ts))
            updates.append(FieldUpdate(field=MatchField.AWAY_SCORE, value=away, source=source, timestamp=ts))
        return await self.apply(match_id, updates, source=source)

    async def apply_many(
        self,
        batch: Mapping[int, Sequence[FieldUpdate]],
        source: str = "bulk",
    ) -> dict[int, WriteResult]:
        """
        Apply independent per-match batches with bounded concurrency.
        Each match is still serialized by its own lock.
        """
        semaphore = asyncio.Semaphore(max(1, self._settings.bulk_apply_concurrency))

        async def _one(match_id: int, updates: Sequence[FieldUpdate]) -> tuple[int, WriteResult]:
            async with semaphore:
                result = await self.apply(match_id, updates, source=source)
                return result.match_id, result

        pairs = await asyncio.gather(*(_one(mid, ups) for mid, ups in batch.items()))
        results = dict(pairs)
        logger.info(
            "bulk_apply_completed",
            source=source,
            matches=len(results),
            applied=sum(1 for r in results.values() if r.applied),
        )
        return results

