"""
Push-feed producer.

Subscribes to the Redis channel carrying normalized feed messages and submits
each one through the WriteGate with source ``feed``. A message that loses the
match lock race is not retried inline; the match goes into the reconciliation
pending set instead.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import ValidationError

from coordination.write_gate import WriteGate
from scheduler.reconciliation import ReconciliationScheduler
from shared.config import Settings, get_settings
from shared.errors import InvalidMatchId
from shared.models.domain import FeedMessage, FieldUpdate, WriteResult, now_ts
from shared.models.enums import MatchField, WriteStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import FEED_MESSAGES
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

FEED_SOURCE = "feed"

_FEED_FIELDS: tuple[tuple[str, MatchField], ...] = (
    ("status", MatchField.STATUS),
    ("minute", MatchField.MINUTE),
    ("home_score", MatchField.HOME_SCORE),
    ("away_score", MatchField.AWAY_SCORE),
)


def feed_message_to_updates(message: FeedMessage, source: str = FEED_SOURCE) -> list[FieldUpdate]:
    ts = message.timestamp or now_ts()
    return [
        FieldUpdate(field=match_field, value=getattr(message, attr), source=source, timestamp=ts)
        for attr, match_field in _FEED_FIELDS
        if getattr(message, attr) is not None
    ]


class FeedListener:
    def __init__(
        self,
        redis: RedisManager,
        gate: WriteGate,
        scheduler: ReconciliationScheduler,
        settings: Settings | None = None,
    ) -> None:
        self._redis = redis
        self._gate = gate
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._shutdown = asyncio.Event()

    async def handle_message(self, raw: str | bytes) -> Optional[WriteResult]:
        try:
            message = FeedMessage.model_validate_json(raw)
            updates = feed_message_to_updates(message)
        except ValidationError as exc:
            FEED_MESSAGES.labels(outcome="invalid").inc()
            logger.warning("feed_message_invalid", error=str(exc))
            return None
        if not updates:
            FEED_MESSAGES.labels(outcome="empty").inc()
            return None

        try:
            result = await self._gate.apply(message.match_id, updates, source=FEED_SOURCE)
        except InvalidMatchId as exc:
            FEED_MESSAGES.labels(outcome="invalid").inc()
            logger.warning("feed_message_invalid", match_id=message.match_id, error=str(exc))
            return None

        FEED_MESSAGES.labels(outcome=result.status.value).inc()
        if result.status == WriteStatus.REJECTED_LOCKED:
            self._scheduler.enqueue(result.match_id, reason="feed_lock_busy")
        return result

    async def listen(self) -> None:
        """Consume the feed channel until shutdown is requested."""
        channel = self._settings.feed_channel
        pubsub = await self._redis.subscribe(channel)
        logger.info("feed_listening", channel=channel)

        try:
            while not self._shutdown.is_set():
                try:
                    message = await asyncio.wait_for(
                        pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0),
                        timeout=2.0,
                    )
                    if message and message.get("type") == "message":
                        await self.handle_message(message.get("data", ""))
                except asyncio.TimeoutError:
                    continue
                except Exception as exc:
                    logger.error("feed_listen_error", error=str(exc), exc_info=True)
                    await asyncio.sleep(1.0)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    def request_shutdown(self) -> None:
        self._shutdown.set()
