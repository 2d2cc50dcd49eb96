"""
Match persistence for the write gate and the periodic jobs.

Lock-scoped reads and writes run on the connection that holds the match lock;
candidate queries for the scheduler and jobs use short read sessions.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from coordination.registry import ProvenanceRegistry
from shared.models.domain import FieldUpdate
from shared.models.enums import LIVE_STATUSES, MatchField, MatchStatus
from shared.models.orm import MatchORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

logger = get_logger(__name__)

_TABLE = MatchORM.__table__


@dataclass(frozen=True)
class Provenance:
    source: Optional[str]
    timestamp: Optional[int]


@dataclass
class MatchSnapshot:
    """The stored values and provenance the gate arbitrates against."""
    match_id: int
    status: MatchStatus
    values: dict[MatchField, Any] = field(default_factory=dict)
    provenance: dict[MatchField, Provenance] = field(default_factory=dict)
    last_update_source: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def provenance_of(self, match_field: MatchField) -> Provenance:
        """Field provenance, falling back to the row-level source with no timestamp."""
        return self.provenance.get(match_field) or Provenance(self.last_update_source, None)


@dataclass(frozen=True)
class LiveMatchRow:
    """Columns the minute and finisher jobs need for a live match."""
    match_id: int
    status: MatchStatus
    minute: Optional[int]
    kickoff_ts: int
    first_half_kickoff_ts: Optional[int]
    second_half_kickoff_ts: Optional[int]
    overtime_kickoff_ts: Optional[int]


def _column_value(value: Any) -> Any:
    if isinstance(value, MatchStatus):
        return int(value)
    return value


class MatchRepository:
    def __init__(self, db: DatabaseManager, registry: ProvenanceRegistry | None = None) -> None:
        self._db = db
        self._registry = registry or ProvenanceRegistry.default()

    # ── Lock-scoped access ──────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self, conn: AsyncConnection) -> AsyncIterator[AsyncConnection]:
        """One transaction on the lock-holding connection; rolls back on error."""
        async with conn.begin():
            yield conn

    async def load(
        self, conn: AsyncConnection, match_id: int, fields: Iterable[MatchField]
    ) -> Optional[MatchSnapshot]:
        """Read current values and provenance for ``fields`` in a single query."""
        wanted = list(dict.fromkeys(fields))
        names = self._registry.columns_to_load(wanted)
        for extra in ("status", "last_update_source"):
            if extra not in names:
                names.append(extra)
        stmt = select(*[_TABLE.c[name] for name in names]).where(_TABLE.c.external_id == match_id)
        row = (await conn.execute(stmt)).mappings().first()
        if row is None:
            return None

        snapshot = MatchSnapshot(
            match_id=match_id,
            status=MatchStatus(row["status"]),
            last_update_source=row["last_update_source"],
        )
        for match_field in wanted:
            snapshot.values[match_field] = row[match_field.value]
            cols = self._registry.columns_for(match_field)
            if cols is not None:
                snapshot.provenance[match_field] = Provenance(row[cols.source], row[cols.timestamp])
        return snapshot

    async def persist(
        self,
        conn: AsyncConnection,
        match_id: int,
        accepted: Sequence[FieldUpdate],
        source: str,
    ) -> None:
        """Write all accepted values, their provenance and the row source in one statement."""
        values: dict[str, Any] = {}
        for upd in accepted:
            values[upd.field.value] = _column_value(upd.value)
            cols = self._registry.columns_for(upd.field)
            if cols is not None:
                values[cols.source] = upd.source
                values[cols.timestamp] = upd.timestamp
        values["last_update_source"] = source
        values["updated_at"] = func.now()
        await conn.execute(update(_TABLE).where(_TABLE.c.external_id == match_id).values(**values))

    # ── Candidate queries ───────────────────────────────────────────────

    async def fetch_ids(self, stmt: Select) -> list[int]:
        """Run a single-column id query in a read session."""
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [int(v) for v in result.scalars().all()]

    async def live_matches(self, limit: int) -> list[LiveMatchRow]:
        """Live matches, least recently updated first."""
        stmt = (
            select(
                MatchORM.external_id,
                MatchORM.status,
                MatchORM.minute,
                MatchORM.kickoff_ts,
                MatchORM.first_half_kickoff_ts,
                MatchORM.second_half_kickoff_ts,
                MatchORM.overtime_kickoff_ts,
            )
            .where(MatchORM.status.in_([int(s) for s in LIVE_STATUSES]))
            .order_by(MatchORM.updated_at.asc(), MatchORM.external_id.asc())
            .limit(limit)
        )
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).all()
        return [
            LiveMatchRow(
                match_id=row.external_id,
                status=MatchStatus(row.status),
                minute=row.minute,
                kickoff_ts=row.kickoff_ts,
                first_half_kickoff_ts=row.first_half_kickoff_ts,
                second_half_kickoff_ts=row.second_half_kickoff_ts,
                overtime_kickoff_ts=row.overtime_kickoff_ts,
            )
            for row in rows
        ]

    async def stuck_live_ids(
        self,
        now_ts: int,
        min_minute: int,
        soft_age_s: int,
        hard_age_s: int,
        limit: int,
    ) -> list[int]:
        """
        Live matches that should long be over: minute past ``min_minute`` with
        kickoff older than ``soft_age_s``, or kickoff older than ``hard_age_s``.
        """
        stmt = (
            select(MatchORM.external_id)
            .where(
                MatchORM.status.in_([int(s) for s in LIVE_STATUSES]),
                or_(
                    and_(MatchORM.minute >= min_minute, MatchORM.kickoff_ts <= now_ts - soft_age_s),
                    MatchORM.kickoff_ts <= now_ts - hard_age_s,
                ),
            )
            .order_by(MatchORM.kickoff_ts.asc())
            .limit(limit)
        )
        return await self.fetch_ids(stmt)

    async def catalog_ids(self, now: datetime, window_s: int, limit: int) -> list[int]:
        """Non-terminal matches kicking off within ``window_s`` either side of now."""
        now_ts = int(now.timestamp())
        stmt = (
            select(MatchORM.external_id)
            .where(
                MatchORM.status != int(MatchStatus.END),
                MatchORM.status != int(MatchStatus.CANCELLED),
                MatchORM.kickoff_ts.between(now_ts - window_s, now_ts + window_s),
            )
            .order_by(MatchORM.updated_at.asc(), MatchORM.external_id.asc())
            .limit(limit)
        )
        return await self.fetch_ids(stmt)
