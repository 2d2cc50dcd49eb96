"""
Pydantic v2 domain models shared across the coordination service.
These are the canonical wire/internal representations, NOT ORM models.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from shared.models.enums import MatchField, MatchStatus, WriteStatus


def now_ts() -> int:
    """Current time as integer epoch seconds (the provenance timestamp unit)."""
    return int(time.time())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Write path ──────────────────────────────────────────────────────────
class FieldUpdate(DomainModel):
    """A proposed change to one field of one match, consumed once by the WriteGate."""
    model_config = ConfigDict(frozen=True)

    field: MatchField
    value: Any
    source: str
    priority: Optional[int] = None
    timestamp: int = Field(default_factory=now_ts)

    @field_validator("value")
    @classmethod
    def coerce_status(cls, value: Any, info: ValidationInfo) -> Any:
        if info.data.get("field") == MatchField.STATUS:
            try:
                return MatchStatus(int(value))
            except TypeError as exc:
                raise ValueError(f"status must be an integer code, got {value!r}") from exc
        return value


class WriteResult(DomainModel):
    status: WriteStatus
    match_id: int
    fields_updated: list[MatchField] = Field(default_factory=list)
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.status == WriteStatus.SUCCESS and bool(self.fields_updated)


# ── Events ──────────────────────────────────────────────────────────────
class MatchUpdatedEvent(DomainModel):
    """Wire payload published to downstream consumers after a commit."""
    match_id: int
    fields: list[MatchField]
    values: dict[str, Any]
    occurred_at: datetime = Field(default_factory=_utcnow)


# ── Push feed ───────────────────────────────────────────────────────────
class FeedMessage(DomainModel):
    """Normalized push-feed message; provider parsing happens before this point."""
    match_id: int
    status: Optional[int] = None
    minute: Optional[int] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    timestamp: Optional[int] = None
