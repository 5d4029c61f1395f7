"""pipewright: CI/CD pipeline orchestration over pluggable execution backends."""

from .activity import Activity, Status, TriggerType, to_activity
from .backends import get_backend
from .driver import PipelineDriver
from .models import Conditions, CronTrigger, Pipeline, Stage, Step, StepType
from .persistence import get_repository
from .service import PipelineService, build_service
from .sync import ActivityReconciler

__version__ = "0.1.0"
__all__ = [
    "Activity",
    "ActivityReconciler",
    "Conditions",
    "CronTrigger",
    "Pipeline",
    "PipelineDriver",
    "PipelineService",
    "Stage",
    "Status",
    "Step",
    "StepType",
    "TriggerType",
    "build_service",
    "get_backend",
    "get_repository",
    "to_activity",
]
