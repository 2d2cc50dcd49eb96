"""
Post-commit match-updated notifications.

The gate calls ``EventDispatcher.emit`` after its transaction commits. Delivery
runs in background tasks so slow or failing consumers never hold a match lock
or fail a write.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Optional, Protocol, Union

from shared.models.domain import MatchUpdatedEvent
from shared.models.enums import MatchField
from shared.utils.logging import get_logger
from shared.utils.metrics import EVENT_HANDLER_FAILURES
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class MatchUpdatedHandler(Protocol):
    def __call__(
        self,
        match_id: int,
        accepted_fields: list[MatchField],
        new_values: dict[MatchField, Any],
    ) -> Union[Awaitable[None], None]: ...


class EventDispatcher:
    """Fans committed changes out to registered handlers, fire-and-forget."""

    def __init__(self) -> None:
        self._handlers: list[tuple[str, MatchUpdatedHandler]] = []
        self._pending: set[asyncio.Task] = set()

    def register(self, handler: MatchUpdatedHandler, name: Optional[str] = None) -> None:
        label = name or getattr(handler, "__name__", type(handler).__name__)
        self._handlers.append((label, handler))
        logger.info("event_handler_registered", handler=label)

    @property
    def handler_names(self) -> list[str]:
        return [name for name, _ in self._handlers]

    def emit(
        self,
        match_id: int,
        accepted_fields: list[MatchField],
        new_values: dict[MatchField, Any],
    ) -> None:
        """Schedule delivery to every handler and return immediately."""
        for name, handler in self._handlers:
            task = asyncio.create_task(
                self._deliver(name, handler, match_id, list(accepted_fields), dict(new_values)),
                name=f"match-updated:{name}:{match_id}",
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(
        self,
        name: str,
        handler: MatchUpdatedHandler,
        match_id: int,
        accepted_fields: list[MatchField],
        new_values: dict[MatchField, Any],
    ) -> None:
        try:
            result = handler(match_id, accepted_fields, new_values)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            EVENT_HANDLER_FAILURES.labels(handler=name).inc()
            logger.error(
                "event_handler_failed",
                handler=name,
                match_id=match_id,
                error=str(exc),
                exc_info=True,
            )

    async def wait_idle(self) -> None:
        """Wait for all in-flight deliveries (used at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class RedisEventPublisher:
    """Handler that publishes each committed change on ``<prefix>:<match_id>``."""

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis

    async def __call__(
        self,
        match_id: int,
        accepted_fields: list[MatchField],
        new_values: dict[MatchField, Any],
    ) -> None:
        event = MatchUpdatedEvent(
            match_id=match_id,
            fields=accepted_fields,
            values={f.value: v for f, v in new_values.items()},
        )
        receivers = await self._redis.publish_match_updated(match_id, event.model_dump_json())
        logger.debug("match_updated_published", match_id=match_id, receivers=receivers)
