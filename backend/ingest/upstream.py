"""
Upstream pull endpoint: authoritative current state for one match.

The provider gateway already returns the normalized shape below; provider
payload parsing lives behind it.
"""
from __future__ import annotations

import abc
from typing import Optional

import httpx
from pydantic import ValidationError

from shared.config import Settings, get_settings
from shared.errors import UpstreamError
from shared.models.domain import DomainModel, FieldUpdate, now_ts
from shared.models.enums import MatchField, MatchStatus
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.http_client import GatewayHTTPClient
from shared.utils.logging import get_logger

logger = get_logger(__name__)

_FIELD_MAP: tuple[tuple[str, MatchField], ...] = (
    ("status", MatchField.STATUS),
    ("minute", MatchField.MINUTE),
    ("home_score", MatchField.HOME_SCORE),
    ("away_score", MatchField.AWAY_SCORE),
    ("update_time", MatchField.PROVIDER_UPDATE_TIME),
    ("event_time", MatchField.LAST_EVENT_TS),
    ("first_half_kickoff_ts", MatchField.FIRST_HALF_KICKOFF_TS),
    ("second_half_kickoff_ts", MatchField.SECOND_HALF_KICKOFF_TS),
    ("overtime_kickoff_ts", MatchField.OVERTIME_KICKOFF_TS),
)


class UpstreamMatchState(DomainModel):
    match_id: int
    status: Optional[MatchStatus] = None
    minute: Optional[int] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    update_time: Optional[int] = None
    event_time: Optional[int] = None
    first_half_kickoff_ts: Optional[int] = None
    second_half_kickoff_ts: Optional[int] = None
    overtime_kickoff_ts: Optional[int] = None

    def to_field_updates(self, source: str) -> list[FieldUpdate]:
        """One update per present field, stamped with the provider's update time."""
        ts = self.update_time or now_ts()
        updates = []
        for attr, match_field in _FIELD_MAP:
            value = getattr(self, attr)
            if value is None:
                continue
            updates.append(FieldUpdate(field=match_field, value=value, source=source, timestamp=ts))
        return updates


class UpstreamClient(abc.ABC):
    async def start(self) -> None:
        """Open network resources."""

    async def close(self) -> None:
        """Release network resources."""

    @abc.abstractmethod
    async def fetch_match(self, match_id: int) -> Optional[UpstreamMatchState]:
        """Current state of ``match_id``, or None if upstream does not know it."""


def _trips_breaker(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return isinstance(exc, httpx.TransportError)


class HTTPUpstreamClient(UpstreamClient):
    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_s: float = 1.0,
    ) -> None:
        s = settings or get_settings()
        self._http = GatewayHTTPClient(
            base_url=s.upstream_base_url,
            api_key=s.upstream_api_key,
            timeout_s=s.upstream_timeout_s,
            max_retries=s.upstream_max_retries,
            backoff_s=backoff_s,
            transport=transport,
        )
        self._breaker = CircuitBreaker(
            "upstream",
            failure_threshold=s.upstream_circuit_failures,
            recovery_timeout_s=s.upstream_circuit_recovery_s,
            is_failure=_trips_breaker,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def start(self) -> None:
        await self._http.start()

    async def close(self) -> None:
        await self._http.close()

    async def fetch_match(self, match_id: int) -> Optional[UpstreamMatchState]:
        try:
            resp = await self._breaker.call(self._http.get, f"/matches/{match_id}")
        except (httpx.HTTPStatusError, httpx.TransportError) as exc:
            code = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            raise UpstreamError(match_id, str(exc) or type(exc).__name__, status_code=code) from exc

        if resp.status_code == 404:
            return None
        try:
            state = UpstreamMatchState.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(match_id, f"malformed payload: {exc}", status_code=resp.status_code) from exc
        if state.match_id != match_id:
            raise UpstreamError(match_id, f"payload is for match {state.match_id}", status_code=resp.status_code)
        return state
