"""In-memory notifier for testing."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, List, Optional

from .base import BaseNotifier, ResourceChange


class InMemoryNotifier(BaseNotifier):
    """Simple in-process queue; ``published`` keeps every event for assertions."""

    def __init__(self) -> None:
        self.published: List[ResourceChange] = []
        self._queue: Deque[ResourceChange] = deque()
        self._lock = asyncio.Lock()

    async def publish(self, change: ResourceChange) -> None:
        async with self._lock:
            self.published.append(change)
            self._queue.append(change)

    async def subscribe(self, lifespan: Optional[float] = None) -> AsyncIterator[ResourceChange]:
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                if self._queue:
                    change = self._queue.popleft()
                    yield change
                    continue

            await asyncio.sleep(0.1)
