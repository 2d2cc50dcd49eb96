"""
SQLAlchemy 2.0 ORM models for Scoreline.
One row per match; critical fields carry a (source, timestamp) provenance pair.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, SmallInteger, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class MatchORM(Base):
    __tablename__ = "matches"
    __table_args__ = (
        Index("ix_matches_status_updated_at", "status", "updated_at"),
        Index("ix_matches_kickoff_ts", "kickoff_ts"),
    )

    external_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    kickoff_ts: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1)
    minute: Mapped[Optional[int]] = mapped_column(SmallInteger)
    home_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    away_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Auxiliary provider timestamps (epoch seconds)
    provider_update_time: Mapped[Optional[int]] = mapped_column(BigInteger)
    last_event_ts: Mapped[Optional[int]] = mapped_column(BigInteger)
    first_half_kickoff_ts: Mapped[Optional[int]] = mapped_column(BigInteger)
    second_half_kickoff_ts: Mapped[Optional[int]] = mapped_column(BigInteger)
    overtime_kickoff_ts: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Provenance of critical fields
    status_source: Mapped[Optional[str]] = mapped_column(String(32))
    status_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger)
    minute_source: Mapped[Optional[str]] = mapped_column(String(32))
    minute_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger)
    home_score_source: Mapped[Optional[str]] = mapped_column(String(32))
    home_score_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger)
    away_score_source: Mapped[Optional[str]] = mapped_column(String(32))
    away_score_timestamp: Mapped[Optional[int]] = mapped_column(BigInteger)

    last_update_source: Mapped[Optional[str]] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
