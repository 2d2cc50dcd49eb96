"""
Unit tests for advisory lock keys and the LockManager connection discipline.

Run: pytest backend/tests/test_locks.py -v
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from coordination.locks import MATCH_KEY_OFFSET, MAX_MATCH_ID, LockKey, LockManager, parse_match_id
from shared.errors import InvalidMatchId, RegistryError
from shared.models.enums import LockNamespace


# ── Key space ───────────────────────────────────────────────────────────

def test_match_key_is_offset_plus_id() -> None:
    key = LockKey.for_match(42)
    assert key.namespace == LockNamespace.MATCH
    assert key.value == MATCH_KEY_OFFSET + 42


def test_match_keys_are_injective_and_disjoint_from_job_keys() -> None:
    match_values = {LockKey.for_match(i).value for i in range(0, 500)}
    job_values = {LockKey.for_job(i).value for i in range(1, 500)}
    assert len(match_values) == 500
    assert match_values.isdisjoint(job_values)


def test_largest_match_id_fits_bigint() -> None:
    assert LockKey.for_match(MAX_MATCH_ID).value == 2**63 - 1


@pytest.mark.parametrize("raw", [-5, "-5", "12a", "1.5", "", "  ", 3.0, None, False, MAX_MATCH_ID + 1, "١٢"])
def test_invalid_match_ids_raise(raw) -> None:
    with pytest.raises(InvalidMatchId):
        parse_match_id(raw)


def test_numeric_strings_are_normalized() -> None:
    assert parse_match_id(" 0017 ") == 17
    assert parse_match_id(0) == 0


@pytest.mark.parametrize("raw", [0, MATCH_KEY_OFFSET, -1, "7001"])
def test_job_keys_must_be_small_positive_ints(raw) -> None:
    with pytest.raises(RegistryError):
        LockKey.for_job(raw)


# ── LockManager ─────────────────────────────────────────────────────────

def _connection(acquired: bool = True) -> MagicMock:
    conn = MagicMock()
    result = MagicMock()
    result.scalar.return_value = acquired
    conn.execute = AsyncMock(return_value=result)
    conn.commit = AsyncMock()
    conn.close = AsyncMock()
    conn.invalidate = AsyncMock()
    return conn


def _manager(conn: MagicMock) -> LockManager:
    db = MagicMock()
    db.checkout = AsyncMock(return_value=conn)
    return LockManager(db)


@pytest.mark.asyncio
async def test_busy_lock_returns_none_and_closes_connection() -> None:
    conn = _connection(acquired=False)
    handle = await _manager(conn).try_acquire(LockKey.for_match(1))
    assert handle is None
    conn.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_acquired_handle_keeps_connection_open() -> None:
    conn = _connection(acquired=True)
    handle = await _manager(conn).try_acquire(LockKey.for_match(1))
    assert handle is not None
    assert handle.connection is conn
    conn.close.assert_not_awaited()
    params = conn.execute.await_args.args[1]
    assert params == {"key": MATCH_KEY_OFFSET + 1}


@pytest.mark.asyncio
async def test_release_unlocks_on_same_connection_then_closes() -> None:
    conn = _connection(acquired=True)
    manager = _manager(conn)
    handle = await manager.try_acquire(LockKey.for_match(9))
    await manager.release(handle)

    assert conn.execute.await_count == 2
    unlock_sql = str(conn.execute.await_args_list[1].args[0])
    assert "pg_advisory_unlock" in unlock_sql
    conn.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_release_failure_is_swallowed_and_connection_invalidated() -> None:
    conn = _connection(acquired=True)
    manager = _manager(conn)
    handle = await manager.try_acquire(LockKey.for_match(9))
    conn.execute.side_effect = OSError("server closed the connection")

    await manager.release(handle)

    conn.invalidate.assert_awaited_once()
    conn.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_release_is_idempotent() -> None:
    conn = _connection(acquired=True)
    manager = _manager(conn)
    handle = await manager.try_acquire(LockKey.for_match(9))
    await manager.release(handle)
    await manager.release(handle)
    assert conn.execute.await_count == 2


@pytest.mark.asyncio
async def test_hold_releases_when_body_raises() -> None:
    conn = _connection(acquired=True)
    manager = _manager(conn)

    with pytest.raises(RuntimeError):
        async with manager.hold(LockKey.for_match(3)) as handle:
            assert handle is not None
            raise RuntimeError("boom")

    assert "pg_advisory_unlock" in str(conn.execute.await_args_list[-1].args[0])
    conn.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_acquire_error_propagates_and_returns_connection() -> None:
    conn = _connection()
    conn.execute.side_effect = OSError("pool exhausted")
    with pytest.raises(OSError):
        await _manager(conn).try_acquire(LockKey.for_match(3))
    conn.close.assert_awaited_once()
