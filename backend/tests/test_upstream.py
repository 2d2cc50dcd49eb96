"""
Tests for the HTTP upstream client, its retries and circuit breaker.
Uses httpx.MockTransport; no network.
"""
from __future__ import annotations

import httpx
import pytest

from ingest.upstream import HTTPUpstreamClient, UpstreamMatchState
from shared.config import Settings
from shared.errors import UpstreamError
from shared.models.enums import MatchField, MatchStatus
from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from shared.utils.http_client import GatewayHTTPClient


def _settings(**overrides) -> Settings:
    base = dict(
        upstream_base_url="http://gateway.test",
        upstream_api_key="secret",
        upstream_max_retries=2,
        upstream_circuit_failures=2,
        upstream_circuit_recovery_s=60,
        metrics_enabled=False,
    )
    base.update(overrides)
    return Settings(**base)


async def _client(handler, **overrides) -> HTTPUpstreamClient:
    client = HTTPUpstreamClient(_settings(**overrides), transport=httpx.MockTransport(handler), backoff_s=0)
    await client.start()
    return client


# ── Payload conversion ──────────────────────────────────────────────────

def test_to_field_updates_uses_provider_time() -> None:
    state = UpstreamMatchState(match_id=1, status=MatchStatus.SECOND_HALF, home_score=2, update_time=1234)
    updates = state.to_field_updates("sync")
    assert [u.field for u in updates] == [MatchField.STATUS, MatchField.HOME_SCORE, MatchField.PROVIDER_UPDATE_TIME]
    assert {u.timestamp for u in updates} == {1234}
    assert {u.source for u in updates} == {"sync"}


# ── HTTPUpstreamClient ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fetch_match_parses_payload_and_sends_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"match_id": 7, "status": 2, "minute": 12, "home_score": 1, "away_score": 0})

    client = await _client(handler)
    try:
        state = await client.fetch_match(7)
    finally:
        await client.close()

    assert state.status == MatchStatus.FIRST_HALF
    assert state.minute == 12
    assert seen[0].url.path == "/matches/7"
    assert seen[0].headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_404_means_unknown_match() -> None:
    client = await _client(lambda request: httpx.Response(404))
    try:
        assert await client.fetch_match(7) is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_server_errors_are_retried() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"match_id": 7, "status": 8})

    client = await _client(handler)
    try:
        state = await client.fetch_match(7)
    finally:
        await client.close()

    assert attempts == 3
    assert state.status == MatchStatus.END


@pytest.mark.asyncio
async def test_exhausted_retries_raise_upstream_error() -> None:
    client = await _client(lambda request: httpx.Response(500))
    try:
        with pytest.raises(UpstreamError) as excinfo:
            await client.fetch_match(7)
    finally:
        await client.close()
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_client_error_is_not_retried() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(401)

    client = await _client(handler)
    try:
        with pytest.raises(UpstreamError):
            await client.fetch_match(7)
    finally:
        await client.close()
    assert attempts == 1
    assert client.breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_malformed_payload_raises_upstream_error() -> None:
    client = await _client(lambda request: httpx.Response(200, json={"match_id": 7, "status": 6}))
    try:
        with pytest.raises(UpstreamError):
            await client.fetch_match(7)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_mismatched_match_id_raises() -> None:
    client = await _client(lambda request: httpx.Response(200, json={"match_id": 8}))
    try:
        with pytest.raises(UpstreamError):
            await client.fetch_match(7)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("refused", request=request)

    client = await _client(handler, upstream_max_retries=0)
    try:
        for _ in range(2):
            with pytest.raises(UpstreamError):
                await client.fetch_match(1)
        with pytest.raises(CircuitBreakerOpen):
            await client.fetch_match(1)
    finally:
        await client.close()
    assert calls == 2


@pytest.mark.asyncio
async def test_gateway_client_always_attempts_once_and_reraises() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("refused", request=request)

    client = GatewayHTTPClient(
        "http://gateway.test", max_retries=-3, backoff_s=0, transport=httpx.MockTransport(handler)
    )
    await client.start()
    try:
        with pytest.raises(httpx.ConnectError):
            await client.get("/matches/1")
    finally:
        await client.close()
    assert calls == 1


# ── CircuitBreaker ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_half_open_probe_closes_circuit() -> None:
    now = [0.0]
    breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout_s=10, clock=lambda: now[0])

    async def fail() -> None:
        raise ConnectionError("down")

    async def ok() -> str:
        return "up"

    with pytest.raises(ConnectionError):
        await breaker.call(fail)
    assert breaker.state == CircuitState.OPEN
    now[0] = 11.0
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(ok) == "up"
    assert breaker.state == CircuitState.CLOSED
