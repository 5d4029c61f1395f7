"""Typed access to pipeline and activity documents."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..activity import Activity
from ..errors import NotFoundError
from ..models import Pipeline
from .repository import DocumentRepository

logger = logging.getLogger(__name__)

PIPELINE_KIND = "pipeline"
ACTIVITY_KIND = "activity"


class PipelineStore:
    """Save and load pipelines and activities through a ``DocumentRepository``."""

    def __init__(self, repository: DocumentRepository) -> None:
        self.repository = repository

    async def _save(self, kind: str, key: str, name: str, data: dict) -> None:
        if await self.repository.get(kind, key) is None:
            await self.repository.create(kind, key, data, name=name)
        else:
            await self.repository.update(kind, key, data)
        logger.debug(f"saved {kind} {key}")

    # ------------------------------------------------------------------
    # Pipelines
    async def save_pipeline(self, pipeline: Pipeline) -> None:
        await self._save(PIPELINE_KIND, pipeline.id, pipeline.name, pipeline.model_dump(mode="json"))

    async def find_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        doc = await self.repository.get(PIPELINE_KIND, pipeline_id)
        return Pipeline.model_validate(doc.data) if doc else None

    async def get_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = await self.find_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError(f"pipeline '{pipeline_id}' not found")
        return pipeline

    async def list_pipelines(self) -> List[Pipeline]:
        docs = await self.repository.list(PIPELINE_KIND)
        return [Pipeline.model_validate(doc.data) for doc in docs]

    async def delete_pipeline(self, pipeline_id: str) -> None:
        await self.repository.delete(PIPELINE_KIND, pipeline_id)

    # ------------------------------------------------------------------
    # Activities
    async def save_activity(self, activity: Activity) -> None:
        await self._save(ACTIVITY_KIND, activity.id, activity.pipeline.name, activity.model_dump(mode="json"))

    async def get_activity(self, activity_id: str) -> Activity:
        doc = await self.repository.get(ACTIVITY_KIND, activity_id)
        if doc is None:
            raise NotFoundError(f"activity '{activity_id}' not found")
        return Activity.model_validate(doc.data)

    async def list_activities(self, pipeline_id: Optional[str] = None) -> List[Activity]:
        docs = await self.repository.list(ACTIVITY_KIND)
        activities = [Activity.model_validate(doc.data) for doc in docs]
        if pipeline_id is not None:
            activities = [a for a in activities if a.pipeline.id == pipeline_id]
        return activities

    async def delete_activity(self, activity_id: str) -> None:
        await self.repository.delete(ACTIVITY_KIND, activity_id)
