"""Source trust levels and per-field provenance column bookkeeping."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from sqlalchemy import Table

from shared.config import Settings, get_settings
from shared.errors import PriorityMismatch, RegistryError
from shared.models.domain import FieldUpdate
from shared.models.enums import CRITICAL_FIELDS, MatchField
from shared.models.orm import MatchORM

UNKNOWN_SOURCE = "unknown"


class SourcePriorityTable:
    """Maps writer labels to integer trust levels; unlisted labels rank as 'unknown'."""

    def __init__(self, priorities: Mapping[str, int]) -> None:
        self._priorities = {k.lower(): int(v) for k, v in priorities.items()}
        self._floor = self._priorities.setdefault(UNKNOWN_SOURCE, 0)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SourcePriorityTable":
        return cls((settings or get_settings()).source_priorities)

    def of(self, source: Optional[str]) -> int:
        if not source:
            return self._floor
        return self._priorities.get(source.lower(), self._floor)

    def resolve(self, update: FieldUpdate) -> int:
        """
        Priority of an update. Provenance stores only the source, so an explicit
        priority must agree with the source's configured level.
        """
        expected = self.of(update.source)
        if update.priority is not None and update.priority != expected:
            raise PriorityMismatch(update.source, update.priority, expected)
        return expected


@dataclass(frozen=True)
class ProvenanceColumns:
    source: str
    timestamp: str


class ProvenanceRegistry:
    """
    Which fields carry their own (source, timestamp) columns.

    Fields not registered here are still writable; they are arbitrated against
    the row's last_update_source with no timestamp.
    """

    def __init__(self, table: Table | None = None) -> None:
        self._table = table if table is not None else MatchORM.__table__
        self._columns: dict[MatchField, ProvenanceColumns] = {}

    @classmethod
    def default(cls) -> "ProvenanceRegistry":
        registry = cls()
        for match_field in CRITICAL_FIELDS:
            registry.register(match_field)
        return registry

    def register(
        self,
        match_field: MatchField,
        source_column: str | None = None,
        timestamp_column: str | None = None,
    ) -> ProvenanceColumns:
        match_field = MatchField(match_field)
        columns = ProvenanceColumns(
            source=source_column or f"{match_field.value}_source",
            timestamp=timestamp_column or f"{match_field.value}_timestamp",
        )
        for name in (match_field.value, columns.source, columns.timestamp):
            if name not in self._table.c:
                raise RegistryError(f"column {name!r} does not exist on {self._table.name}")
        existing = self._columns.get(match_field)
        if existing is not None and existing != columns:
            raise RegistryError(f"field {match_field.value!r} already registered with {existing}")
        self._columns[match_field] = columns
        return columns

    def columns_for(self, match_field: MatchField) -> Optional[ProvenanceColumns]:
        return self._columns.get(match_field)

    def columns_to_load(self, fields: Iterable[MatchField]) -> list[str]:
        """Column names needed to arbitrate ``fields``, de-duplicated, order preserved."""
        names: list[str] = []
        for match_field in fields:
            cols = self._columns.get(match_field)
            candidates = [match_field.value] + ([cols.source, cols.timestamp] if cols else [])
            for name in candidates:
                if name not in names:
                    names.append(name)
        return names
