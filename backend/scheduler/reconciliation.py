"""
Reconciliation scheduler.

Phase buckets feed one deduplicating pending set of match ids. A separate
drain tick pops a bounded batch and, one id at a time, pulls the authoritative
state from upstream and submits it through the WriteGate.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from coordination.locks import parse_match_id
from coordination.repository import MatchRepository
from coordination.write_gate import WriteGate
from ingest.upstream import UpstreamClient
from jobs.runner import JobContext
from scheduler.buckets import PhaseBucket
from shared.config import Settings, get_settings
from shared.errors import InvalidMatchId, UpstreamError
from shared.models.enums import WriteStatus
from shared.utils.circuit_breaker import CircuitBreakerOpen
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    RECONCILE_ENQUEUED,
    RECONCILE_ERRORS,
    RECONCILE_PENDING,
    RECONCILE_PROCESSED,
)

logger = get_logger(__name__)

SYNC_SOURCE = "sync"


@dataclass(frozen=True)
class PendingEntry:
    match_id: int
    reason: str
    enqueued_at: float


class PendingSet:
    """Insertion-ordered set of match ids; re-adding a pending id is a no-op."""

    def __init__(self) -> None:
        self._entries: dict[int, PendingEntry] = {}

    def add(self, match_id: int, reason: str = "manual") -> bool:
        if match_id in self._entries:
            return False
        self._entries[match_id] = PendingEntry(match_id, reason, time.monotonic())
        RECONCILE_PENDING.set(len(self._entries))
        return True

    def pop_batch(self, limit: int) -> list[PendingEntry]:
        batch = []
        for match_id in list(self._entries)[:limit]:
            batch.append(self._entries.pop(match_id))
        RECONCILE_PENDING.set(len(self._entries))
        return batch

    def ids(self) -> list[int]:
        return list(self._entries)

    def __contains__(self, match_id: object) -> bool:
        return match_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ReconciliationScheduler:
    def __init__(
        self,
        repository: MatchRepository,
        gate: WriteGate,
        upstream: UpstreamClient,
        buckets: tuple[PhaseBucket, ...],
        settings: Settings | None = None,
        source: str = SYNC_SOURCE,
    ) -> None:
        self._repo = repository
        self._gate = gate
        self._upstream = upstream
        self._buckets = {b.name: b for b in buckets}
        self._settings = settings or get_settings()
        self._source = source
        self._pending = PendingSet()
        self._draining = False

    @property
    def pending(self) -> PendingSet:
        return self._pending

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def buckets(self) -> list[PhaseBucket]:
        return list(self._buckets.values())

    # ── Enqueue ─────────────────────────────────────────────────────────

    def enqueue(self, match_id: object, reason: str = "manual") -> bool:
        """Add one id to the pending set. Returns False if it was already pending."""
        return self._pending.add(parse_match_id(match_id), reason)

    async def enqueue_bucket(self, bucket: PhaseBucket, now: Optional[datetime] = None) -> int:
        ids = await self._repo.fetch_ids(bucket.candidate_statement(now or datetime.now(timezone.utc)))
        added = sum(1 for match_id in ids if self._pending.add(match_id, bucket.name))
        if added:
            RECONCILE_ENQUEUED.labels(bucket=bucket.name).inc(added)
            logger.info(
                "reconcile_enqueued",
                bucket=bucket.name,
                candidates=len(ids),
                added=added,
                pending=len(self._pending),
            )
        return added

    async def refresh_catalog(self, now: Optional[datetime] = None) -> int:
        """Enqueue every non-terminal match kicking off inside the catalog window."""
        ids = await self._repo.catalog_ids(
            now or datetime.now(timezone.utc),
            window_s=self._settings.catalog_refresh_window_s,
            limit=self._settings.reconcile_enqueue_limit * 10,
        )
        added = sum(1 for match_id in ids if self._pending.add(match_id, "catalog_refresh"))
        RECONCILE_ENQUEUED.labels(bucket="catalog_refresh").inc(added)
        logger.info("catalog_refresh_enqueued", candidates=len(ids), added=added, pending=len(self._pending))
        return added

    # ── Drain ───────────────────────────────────────────────────────────

    async def drain_once(self) -> int:
        """
        Process at most ``reconcile_batch_limit`` pending ids, serially.
        Returns how many ids were taken from the pending set.
        """
        if self._draining:
            logger.debug("reconcile_drain_already_running")
            return 0
        self._draining = True
        try:
            batch = self._pending.pop_batch(self._settings.reconcile_batch_limit)
            for index, entry in enumerate(batch):
                if index:
                    await asyncio.sleep(self._settings.reconcile_delay_s)
                await self._reconcile_one(entry)
            if batch:
                logger.info("reconcile_drained", processed=len(batch), remaining=len(self._pending))
            return len(batch)
        finally:
            self._draining = False

    async def _reconcile_one(self, entry: PendingEntry) -> Optional[WriteStatus]:
        match_id = entry.match_id
        try:
            state = await self._upstream.fetch_match(match_id)
            if state is None:
                logger.warning("reconcile_upstream_missing", match_id=match_id, reason=entry.reason)
                RECONCILE_PROCESSED.labels(status="upstream_missing").inc()
                return None
            result = await self._gate.apply(match_id, state.to_field_updates(self._source), source=self._source)
        except (UpstreamError, CircuitBreakerOpen) as exc:
            RECONCILE_ERRORS.labels(kind="upstream").inc()
            logger.warning("reconcile_upstream_failed", match_id=match_id, error=str(exc))
            return None
        except InvalidMatchId as exc:
            RECONCILE_ERRORS.labels(kind="invalid_id").inc()
            logger.warning("reconcile_invalid_match_id", match_id=match_id, error=str(exc))
            return None
        except Exception as exc:
            RECONCILE_ERRORS.labels(kind="internal").inc()
            logger.error("reconcile_failed", match_id=match_id, error=str(exc), exc_info=True)
            return None

        RECONCILE_PROCESSED.labels(status=result.status.value).inc()
        if result.status == WriteStatus.REJECTED_LOCKED:
            self._pending.add(match_id, "lock_busy")
        return result.status

    # ── Job bodies ──────────────────────────────────────────────────────

    def enqueue_body(self, bucket_name: str):
        bucket = self._buckets[bucket_name]

        async def _body(ctx: JobContext) -> int:
            return await self.enqueue_bucket(bucket)

        return _body

    async def drain_body(self, ctx: JobContext) -> int:
        return await self.drain_once()

    async def catalog_body(self, ctx: JobContext) -> int:
        return await self.refresh_catalog()
