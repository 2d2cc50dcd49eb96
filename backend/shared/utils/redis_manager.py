"""
Redis connection manager for Scoreline.
Carries the outbound match-updated events and the inbound push feed.
"""
from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

MATCH_UPDATED_CHANNEL = "{prefix}:{match_id}"


class RedisManager:
    """Manages the async Redis connection pool and pub/sub helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool and verify it."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected")

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.aclose()
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    def match_channel(self, match_id: int) -> str:
        return MATCH_UPDATED_CHANNEL.format(
            prefix=self._settings.event_channel_prefix, match_id=match_id
        )

    async def publish_match_updated(self, match_id: int, payload: str) -> int:
        """Publish a match-updated payload. Returns the number of receivers."""
        return await self.client.publish(self.match_channel(match_id), payload)

    async def subscribe(self, channel: str) -> PubSub:
        """Create a PubSub subscription on an exact channel name."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        return pubsub
