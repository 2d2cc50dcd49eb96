"""
PostgreSQL advisory locks for cross-instance mutual exclusion.

Two namespaces share the single bigint key space of pg_try_advisory_lock:
JOB keys are small fixed constants, MATCH keys are ``MATCH_KEY_OFFSET + id``.
Locks are session-level, so a handle owns the pooled connection it was
taken on until release.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from shared.errors import InvalidMatchId, RegistryError
from shared.models.enums import LockNamespace
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.metrics import LOCK_ACQUIRE, LOCK_RELEASE_FAILURES

logger = get_logger(__name__)

PG_BIGINT_MAX = 2**63 - 1
MATCH_KEY_OFFSET = 1_000_000_000
MAX_MATCH_ID = PG_BIGINT_MAX - MATCH_KEY_OFFSET

_TRY_LOCK = text("SELECT pg_try_advisory_lock(:key)")
_UNLOCK = text("SELECT pg_advisory_unlock(:key)")


def parse_match_id(match_id: object) -> int:
    """Normalize a match id to a non-negative int or raise InvalidMatchId."""
    if isinstance(match_id, bool):
        raise InvalidMatchId(match_id, "booleans are not match ids")
    if isinstance(match_id, int):
        value = match_id
    elif isinstance(match_id, str):
        stripped = match_id.strip()
        if not stripped or not stripped.isascii() or not stripped.isdigit():
            raise InvalidMatchId(match_id, "not a non-negative integer")
        value = int(stripped)
    else:
        raise InvalidMatchId(match_id, f"unsupported type {type(match_id).__name__}")
    if value < 0:
        raise InvalidMatchId(match_id, "negative")
    if value > MAX_MATCH_ID:
        raise InvalidMatchId(match_id, "exceeds lock key space")
    return value


@dataclass(frozen=True)
class LockKey:
    namespace: LockNamespace
    id: int

    @classmethod
    def for_match(cls, match_id: object) -> "LockKey":
        return cls(LockNamespace.MATCH, parse_match_id(match_id))

    @classmethod
    def for_job(cls, job_key: int) -> "LockKey":
        if isinstance(job_key, bool) or not isinstance(job_key, int):
            raise RegistryError(f"job lock key must be an int, got {job_key!r}")
        if not 0 < job_key < MATCH_KEY_OFFSET:
            raise RegistryError(f"job lock key {job_key} outside (0, {MATCH_KEY_OFFSET})")
        return cls(LockNamespace.JOB, job_key)

    @property
    def value(self) -> int:
        """The bigint passed to pg_*_advisory_lock."""
        if self.namespace == LockNamespace.MATCH:
            return MATCH_KEY_OFFSET + self.id
        return self.id

    def __str__(self) -> str:
        return f"{self.namespace.value}:{self.id}"


@dataclass
class LockHandle:
    """A held advisory lock and the connection (session) that holds it."""
    key: LockKey
    connection: AsyncConnection
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False


class LockManager:
    """Non-blocking acquire/release of advisory locks on dedicated connections."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def try_acquire(self, key: LockKey) -> Optional[LockHandle]:
        """
        Try to take ``key`` without waiting.

        Returns a handle owning the connection, or None when another session
        holds the lock. Connection and query errors propagate.
        """
        conn = await self._db.checkout()
        try:
            acquired = (await conn.execute(_TRY_LOCK, {"key": key.value})).scalar()
            # Session-level locks survive the commit; this ends the implicit transaction.
            await conn.commit()
        except BaseException:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            LOCK_ACQUIRE.labels(namespace=key.namespace.value, outcome="busy").inc()
            logger.debug("lock_busy", key=str(key))
            return None

        LOCK_ACQUIRE.labels(namespace=key.namespace.value, outcome="acquired").inc()
        return LockHandle(key=key, connection=conn)

    async def release(self, handle: LockHandle) -> None:
        """Release a held lock and return its connection. Never raises."""
        if handle.released:
            return
        handle.released = True
        conn = handle.connection
        try:
            released = (await conn.execute(_UNLOCK, {"key": handle.key.value})).scalar()
            await conn.commit()
            if not released:
                logger.warning("lock_not_held_on_release", key=str(handle.key))
        except Exception as exc:
            LOCK_RELEASE_FAILURES.labels(namespace=handle.key.namespace.value).inc()
            logger.error("lock_release_failed", key=str(handle.key), error=str(exc))
            # Dropping the DBAPI connection ends the session, which frees its locks.
            try:
                await conn.invalidate()
            except Exception as inv_exc:
                logger.warning("lock_connection_invalidate_failed", key=str(handle.key), error=str(inv_exc))
        finally:
            try:
                await conn.close()
            except Exception as close_exc:
                logger.warning("lock_connection_close_failed", key=str(handle.key), error=str(close_exc))

    @asynccontextmanager
    async def hold(self, key: LockKey) -> AsyncIterator[Optional[LockHandle]]:
        """
        Scoped acquire. Yields the handle, or None when the lock is busy.
        The lock is released on every exit path.
        """
        handle = await self.try_acquire(key)
        try:
            yield handle
        finally:
            if handle is not None:
                await self.release(handle)
