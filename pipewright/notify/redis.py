"""Redis notifier for cross-process change events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from .base import BaseNotifier, ResourceChange

logger = logging.getLogger(__name__)


class RedisNotifier(BaseNotifier):
    """Redis list acting as a change-event queue."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel: str = "pipewright:events",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisNotifier")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel = channel
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, change: ResourceChange) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.channel, change.to_json())

    async def subscribe(self, lifespan: Optional[float] = None) -> AsyncIterator[ResourceChange]:
        if not self._redis:
            await self.connect()

        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            result = await self._redis.brpop(self.channel, timeout=1)
            if result:
                _, payload = result
                try:
                    yield ResourceChange.from_json(payload)
                except ValidationError as exc:
                    logger.warning(f"Failed to parse change event: {exc}")
                    continue

            await asyncio.sleep(0.01)
