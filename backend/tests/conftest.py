"""
Shared in-memory fakes for the coordination tests.

FakeLockManager and FakeMatchRepository subclass the real classes and replace
only their database I/O, so the WriteGate, JobRunner and scheduler run their
production code paths against them.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

import pytest
from sqlalchemy import Select

from coordination.events import EventDispatcher
from coordination.locks import LockHandle, LockKey, LockManager
from coordination.registry import ProvenanceRegistry, SourcePriorityTable
from coordination.repository import LiveMatchRow, MatchRepository, MatchSnapshot, Provenance
from coordination.write_gate import WriteGate
from shared.config import DEFAULT_SOURCE_PRIORITIES, Settings
from shared.models.domain import FieldUpdate
from shared.models.enums import MatchField, MatchStatus


class FakeConnection:
    """Stands in for the AsyncConnection a lock handle owns."""

    def __init__(self, key: LockKey) -> None:
        self.key = key


class FakeLockManager(LockManager):
    def __init__(self) -> None:
        super().__init__(db=None)  # type: ignore[arg-type]
        self.held: set[int] = set()
        self.foreign: set[int] = set()  # keys held by "another instance"
        self.acquired: list[LockKey] = []
        self.released: list[LockKey] = []

    async def try_acquire(self, key: LockKey) -> Optional[LockHandle]:
        await asyncio.sleep(0)
        if key.value in self.held or key.value in self.foreign:
            return None
        self.held.add(key.value)
        self.acquired.append(key)
        return LockHandle(key=key, connection=FakeConnection(key))  # type: ignore[arg-type]

    async def release(self, handle: LockHandle) -> None:
        if handle.released:
            return
        handle.released = True
        self.held.discard(handle.key.value)
        self.released.append(handle.key)


def match_row(
    match_id: int,
    status: MatchStatus = MatchStatus.FIRST_HALF,
    **values: Any,
) -> dict[str, Any]:
    row: dict[str, Any] = {
        "external_id": match_id,
        "kickoff_ts": 1_700_000_000,
        "status": int(status),
        "minute": None,
        "home_score": 0,
        "away_score": 0,
        "last_update_source": None,
    }
    row.update(values)
    return row


class FakeMatchRepository(MatchRepository):
    """
    Rows live in a dict. Writes made inside ``transaction`` are staged and only
    become visible when the block exits without an exception.
    """

    def __init__(self, rows: Iterable[dict[str, Any]] = ()) -> None:
        super().__init__(db=None, registry=ProvenanceRegistry.default())  # type: ignore[arg-type]
        self.rows: dict[int, dict[str, Any]] = {r["external_id"]: dict(r) for r in rows}
        self.loads = 0
        self.persist_calls = 0
        self.fail_persist: Optional[Exception] = None
        self.load_gate: Optional[asyncio.Event] = None
        self.candidate_ids: list[int] = []
        self.live_rows: list[LiveMatchRow] = []
        self.stuck_ids: list[int] = []
        self.statements: list[Select] = []
        self._staged: dict[int, dict[str, Any]] = {}

    @asynccontextmanager
    async def transaction(self, conn: Any) -> AsyncIterator[Any]:
        self._staged = {}
        try:
            yield conn
        except BaseException:
            self._staged = {}
            raise
        for match_id, values in self._staged.items():
            self.rows[match_id].update(values)
        self._staged = {}

    async def load(self, conn: Any, match_id: int, fields: Iterable[MatchField]) -> Optional[MatchSnapshot]:
        self.loads += 1
        if self.load_gate is not None:
            await self.load_gate.wait()
        row = self.rows.get(match_id)
        if row is None:
            return None
        snapshot = MatchSnapshot(
            match_id=match_id,
            status=MatchStatus(row["status"]),
            last_update_source=row.get("last_update_source"),
        )
        for match_field in fields:
            snapshot.values[match_field] = row.get(match_field.value)
            cols = self._registry.columns_for(match_field)
            if cols is not None:
                snapshot.provenance[match_field] = Provenance(row.get(cols.source), row.get(cols.timestamp))
        return snapshot

    async def persist(self, conn: Any, match_id: int, accepted: Sequence[FieldUpdate], source: str) -> None:
        self.persist_calls += 1
        if self.fail_persist is not None:
            raise self.fail_persist
        staged = self._staged.setdefault(match_id, {})
        for upd in accepted:
            staged[upd.field.value] = int(upd.value) if isinstance(upd.value, MatchStatus) else upd.value
            cols = self._registry.columns_for(upd.field)
            if cols is not None:
                staged[cols.source] = upd.source
                staged[cols.timestamp] = upd.timestamp
        staged["last_update_source"] = source

    async def fetch_ids(self, stmt: Select) -> list[int]:
        self.statements.append(stmt)
        return list(self.candidate_ids)

    async def live_matches(self, limit: int) -> list[LiveMatchRow]:
        return self.live_rows[:limit]

    async def stuck_live_ids(self, now_ts: int, min_minute: int, soft_age_s: int, hard_age_s: int, limit: int) -> list[int]:
        return self.stuck_ids[:limit]

    async def catalog_ids(self, now, window_s: int, limit: int) -> list[int]:
        return list(self.candidate_ids)[:limit]


class RecordingHandler:
    def __init__(self) -> None:
        self.calls: list[tuple[int, list[MatchField], dict[MatchField, Any]]] = []

    async def __call__(self, match_id: int, fields: list[MatchField], values: dict[MatchField, Any]) -> None:
        self.calls.append((match_id, fields, values))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        reconcile_batch_limit=3,
        reconcile_delay_s=0.0,
        bulk_apply_concurrency=4,
        metrics_enabled=False,
    )


@pytest.fixture
def locks() -> FakeLockManager:
    return FakeLockManager()


@pytest.fixture
def repo() -> FakeMatchRepository:
    return FakeMatchRepository([match_row(1), match_row(2), match_row(3)])


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def gate(locks: FakeLockManager, repo: FakeMatchRepository, recorder: RecordingHandler, settings: Settings) -> WriteGate:
    events = EventDispatcher()
    events.register(recorder, name="recorder")
    return WriteGate(
        locks,
        repo,
        SourcePriorityTable(DEFAULT_SOURCE_PRIORITIES),
        events=events,
        settings=settings,
    )
