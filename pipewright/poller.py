"""Recurring reconciliation of every outstanding activity."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from .errors import PipewrightError

if TYPE_CHECKING:
    from .service import PipelineService

logger = logging.getLogger(__name__)


class SyncPoller:
    """Poll the backend on behalf of every non-terminal activity.

    Polling is the only way backend-side completion becomes visible. A
    failure syncing one activity never stops the others.
    """

    def __init__(self, service: "PipelineService", interval: float = 5.0) -> None:
        self.service = service
        self.interval = interval

    async def poll_once(self) -> int:
        """Sync each outstanding activity once. Returns how many changed."""
        changed = 0
        for activity in await self.service.list_activities():
            if activity.is_terminal:
                continue
            try:
                if await self.service.sync_activity(activity.id):
                    changed += 1
            except PipewrightError as exc:
                logger.error(f"fail to sync activity {activity.id}: {exc}")
        logger.debug(f"poll done, {changed} activities changed")
        return changed

    async def run(self, lifespan: Optional[float] = None) -> None:
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break
            await self.poll_once()
            await asyncio.sleep(self.interval)
