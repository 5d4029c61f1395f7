"""Trigger API: pipeline CRUD and activity lifecycle operations."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .activity import Activity, TriggerType, now_ms
from .backends import get_backend
from .config import PipewrightConfig, load_config
from .driver import PipelineDriver
from .models import Pipeline
from .notify import BaseNotifier, ResourceChange, get_notifier
from .persistence import PipelineStore, get_repository
from .scheduler import next_run_time
from .sync import ActivityReconciler

logger = logging.getLogger(__name__)


class PipelineService:
    """Entry point used by the CLI, the poller and the cron scheduler.

    Every mutation of one activity happens under that activity's lock, and
    change events go out only after the new state has been saved.
    """

    def __init__(
        self,
        store: PipelineStore,
        driver: PipelineDriver,
        reconciler: ActivityReconciler,
        notifier: Optional[BaseNotifier] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.driver = driver
        self.reconciler = reconciler
        self.notifier = notifier
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _activity_lock(self, activity_id: str) -> AsyncIterator[None]:
        """Serialize work on one activity. The lock is forgotten once unused."""
        lock = self._locks.setdefault(activity_id, asyncio.Lock())
        self._lock_users[activity_id] = self._lock_users.get(activity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[activity_id] -= 1
            if not self._lock_users[activity_id]:
                del self._lock_users[activity_id]
                del self._locks[activity_id]

    async def _notify(self, resource_type: str, action: str, resource_id: str, data: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        await self.notifier.publish(
            ResourceChange(
                resource_type=resource_type,
                action=action,
                resource_id=resource_id,
                data=data,
            )
        )

    async def close(self) -> None:
        if self.notifier is not None:
            await self.notifier.disconnect()
        await self.driver.backend.disconnect()

    # ------------------------------------------------------------------
    # Pipelines
    async def get_pipeline(self, pipeline_id: str) -> Pipeline:
        return await self.store.get_pipeline(pipeline_id)

    async def list_pipelines(self) -> List[Pipeline]:
        return await self.store.list_pipelines()

    async def create_pipeline(self, pipeline: Pipeline) -> Pipeline:
        pipeline.validate_definition()
        if not pipeline.webhook_token:
            pipeline.webhook_token = uuid.uuid4().hex
        pipeline.next_run_time = next_run_time(pipeline, self._clock())
        await self.store.save_pipeline(pipeline)
        logger.debug(f"created pipeline: {pipeline.name}")
        await self._notify("pipeline", "create", pipeline.id, pipeline.model_dump(mode="json"))
        return pipeline

    async def update_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Replace a definition, keeping its webhook token and run counters."""
        pipeline.validate_definition()
        previous = await self.store.get_pipeline(pipeline.id)
        pipeline.webhook_token = previous.webhook_token
        pipeline.run_count = previous.run_count
        pipeline.last_run_id = previous.last_run_id
        pipeline.last_run_status = previous.last_run_status
        pipeline.last_run_time = previous.last_run_time
        pipeline.next_run_time = next_run_time(pipeline, self._clock())
        await self.store.save_pipeline(pipeline)
        logger.debug("updated pipeline")
        await self._notify("pipeline", "update", pipeline.id, pipeline.model_dump(mode="json"))
        return pipeline

    async def delete_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = await self.store.get_pipeline(pipeline_id)
        await self.store.delete_pipeline(pipeline_id)
        await self._notify("pipeline", "delete", pipeline_id, pipeline.model_dump(mode="json"))
        return pipeline

    async def refresh_next_run_time(self, pipeline_id: str, now: Optional[int] = None) -> Pipeline:
        pipeline = await self.store.get_pipeline(pipeline_id)
        pipeline.next_run_time = next_run_time(pipeline, now if now is not None else self._clock())
        await self.store.save_pipeline(pipeline)
        return pipeline

    async def _record_run(self, pipeline: Pipeline, activity: Activity) -> None:
        pipeline.run_count = activity.run_sequence
        pipeline.last_run_id = activity.id
        pipeline.last_run_status = activity.status.value
        pipeline.last_run_time = activity.start_ts
        pipeline.next_run_time = next_run_time(pipeline, self._clock())
        await self.store.save_pipeline(pipeline)
        await self._notify("pipeline", "update", pipeline.id, pipeline.model_dump(mode="json"))

    async def _refresh_last_run(self, activity: Activity) -> None:
        pipeline = await self.store.find_pipeline(activity.pipeline.id)
        if pipeline is None or pipeline.last_run_id != activity.id:
            return
        if pipeline.last_run_status == activity.status.value:
            return
        pipeline.last_run_status = activity.status.value
        await self.store.save_pipeline(pipeline)
        await self._notify("pipeline", "update", pipeline.id, pipeline.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Activities
    async def get_activity(self, activity_id: str) -> Activity:
        return await self.store.get_activity(activity_id)

    async def list_activities(self, pipeline_id: Optional[str] = None) -> List[Activity]:
        return await self.store.list_activities(pipeline_id)

    async def run_pipeline(
        self, pipeline_id: str, trigger_type: TriggerType = TriggerType.MANUAL
    ) -> Activity:
        pipeline = await self.store.get_pipeline(pipeline_id)
        activity = await self.driver.run_pipeline(pipeline, trigger_type)
        async with self._activity_lock(activity.id):
            await self.store.save_activity(activity)
        await self._record_run(pipeline, activity)
        await self._notify("activity", "create", activity.id, activity.model_dump(mode="json"))
        return activity

    async def rerun_activity(self, activity_id: str) -> Activity:
        async with self._activity_lock(activity_id):
            activity = await self.store.get_activity(activity_id)
            pipeline = await self.store.find_pipeline(activity.pipeline.id)
            run_count = pipeline.run_count if pipeline else activity.run_sequence
            await self.driver.rerun_activity(activity, run_count)
            await self.store.save_activity(activity)
        if pipeline is not None:
            await self._record_run(pipeline, activity)
        await self._notify("activity", "update", activity.id, activity.model_dump(mode="json"))
        return activity

    async def stop_activity(self, activity_id: str) -> Activity:
        async with self._activity_lock(activity_id):
            activity = await self.store.get_activity(activity_id)
            await self.driver.stop_activity(activity)
            await self.store.save_activity(activity)
        await self._refresh_last_run(activity)
        await self._notify("activity", "update", activity.id, activity.model_dump(mode="json"))
        return activity

    async def approve_activity(self, activity_id: str) -> Activity:
        async with self._activity_lock(activity_id):
            activity = await self.store.get_activity(activity_id)
            await self.driver.approve(activity)
            await self.store.save_activity(activity)
        await self._refresh_last_run(activity)
        await self._notify("activity", "update", activity.id, activity.model_dump(mode="json"))
        return activity

    async def sync_activity(self, activity_id: str) -> bool:
        """Reconcile one activity; persist and notify only when it changed."""
        async with self._activity_lock(activity_id):
            activity = await self.store.get_activity(activity_id)
            changed = await self.reconciler.sync(activity)
            if changed:
                await self.store.save_activity(activity)
        if changed:
            await self._refresh_last_run(activity)
            await self._notify("activity", "update", activity.id, activity.model_dump(mode="json"))
        return changed

    async def delete_activity(self, activity_id: str) -> None:
        async with self._activity_lock(activity_id):
            activity = await self.store.get_activity(activity_id)
            await self.store.delete_activity(activity_id)
        await self._notify("activity", "delete", activity_id, activity.model_dump(mode="json"))

    async def get_step_log(
        self, activity_id: str, stage_ordinal: int, step_ordinal: int, previous_log: str = ""
    ) -> str:
        activity = await self.store.get_activity(activity_id)
        return await self.reconciler.step_log(activity, stage_ordinal, step_ordinal, previous_log)


def build_service(config: Optional[PipewrightConfig] = None) -> PipelineService:
    """Assemble backend, repository and notifier from configuration."""
    config = config or load_config()
    backend = get_backend(config=config)
    driver = PipelineDriver(backend)
    return PipelineService(
        store=PipelineStore(get_repository(config=config)),
        driver=driver,
        reconciler=ActivityReconciler(backend, driver),
        notifier=get_notifier(config=config),
    )


