"""Cron triggers: next-run computation and the due-pipeline loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

import pytz
from croniter import croniter

from .activity import TriggerType, now_ms
from .errors import PipewrightError
from .models import Pipeline

if TYPE_CHECKING:
    from .service import PipelineService

logger = logging.getLogger(__name__)


def next_run_time(pipeline: Pipeline, now: Optional[int] = None) -> int:
    """Epoch milliseconds of the next cron fire time, or 0 when there is none."""
    if not pipeline.is_activate:
        return 0
    trigger = pipeline.cron_trigger
    if not trigger.spec:
        return 0
    try:
        tz = pytz.timezone(trigger.timezone or "UTC")
    except pytz.UnknownTimeZoneError as exc:
        logger.error(f"fail get timezone '{trigger.timezone}', err: {exc}")
        return 0
    if not croniter.is_valid(trigger.spec):
        logger.error(f"error parse cron exp, {trigger.spec}")
        return 0

    now = now if now is not None else now_ms()
    start = datetime.fromtimestamp(now / 1000, tz)
    schedule = croniter(trigger.spec, start)
    fire = int(schedule.get_next(datetime).timestamp() * 1000)
    while fire <= now:
        fire = int(schedule.get_next(datetime).timestamp() * 1000)
    return fire


class CronScheduler:
    """Periodically runs active pipelines whose next run time has passed."""

    def __init__(self, service: "PipelineService", interval: float = 30.0) -> None:
        self.service = service
        self.interval = interval

    async def tick(self, now: Optional[int] = None) -> int:
        """Run every due pipeline once. Returns how many were started."""
        now = now if now is not None else now_ms()
        started = 0
        for pipeline in await self.service.list_pipelines():
            if not pipeline.is_activate or not pipeline.cron_trigger.spec:
                continue
            if not pipeline.next_run_time:
                await self.service.refresh_next_run_time(pipeline.id, now)
                continue
            if pipeline.next_run_time > now:
                continue
            logger.info(f"cron trigger for pipeline '{pipeline.name}'")
            try:
                await self.service.run_pipeline(pipeline.id, TriggerType.CRON)
                started += 1
            except PipewrightError as exc:
                logger.error(f"fail to run pipeline '{pipeline.name}' on schedule: {exc}")
                await self.service.refresh_next_run_time(pipeline.id, now)
        return started

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``interval`` seconds until ``lifespan`` elapses (forever if None)."""
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break
            await self.tick()
            await asyncio.sleep(self.interval)
