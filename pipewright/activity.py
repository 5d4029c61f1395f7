"""Run-time state tree of one pipeline activity."""

from __future__ import annotations

import logging
import time
import uuid
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import DefinitionError
from .models import Pipeline, StepType

logger = logging.getLogger(__name__)


class Status(str, Enum):
    WAITING = "Waiting"
    PENDING = "Pending"
    BUILDING = "Building"
    SUCCESS = "Success"
    FAIL = "Fail"
    SKIP = "Skip"
    ABORT = "Abort"


class TriggerType(str, Enum):
    MANUAL = "manual"
    CRON = "cron"
    WEBHOOK = "webhook"
    RERUN = "rerun"


TERMINAL = frozenset({Status.SUCCESS, Status.FAIL, Status.SKIP, Status.ABORT})

_RANK = {
    Status.WAITING: 0,
    Status.PENDING: 1,
    Status.BUILDING: 2,
    Status.SUCCESS: 3,
    Status.FAIL: 3,
    Status.SKIP: 3,
    Status.ABORT: 3,
}


def now_ms() -> int:
    return int(time.time() * 1000)


class _Node(BaseModel):
    status: Status = Status.WAITING

    def advance(self, status: Status) -> bool:
        """Move to ``status`` if that is a forward transition.

        Returns ``True`` when the status changed. Backward moves and moves
        out of a terminal status are ignored.
        """
        if status == self.status:
            return False
        if self.status in TERMINAL or _RANK[status] <= _RANK[self.status]:
            logger.debug(f"ignoring transition {self.status.value} -> {status.value}")
            return False
        self.status = status
        return True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL


class ActivityStep(_Node):
    ordinal: int
    stage_ordinal: int
    name: str
    start_ts: int = 0
    duration: int = 0

    def reset(self) -> None:
        self.status = Status.WAITING
        self.start_ts = 0
        self.duration = 0


class ActivityStage(_Node):
    ordinal: int
    name: str
    start_ts: int = 0
    duration: int = 0
    need_approval: bool = False
    steps: List[ActivityStep] = Field(default_factory=list)

    def reset(self) -> None:
        self.status = Status.WAITING
        self.start_ts = 0
        self.duration = 0
        for step in self.steps:
            step.reset()


class Activity(_Node):
    """One run of a pipeline.

    ``pipeline`` is a snapshot of the definition taken at trigger time, so
    later edits never leak into an in-flight run. Stages and steps are
    addressed by ordinal into both ``pipeline.stages`` and ``stages``.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    pipeline: Pipeline
    run_sequence: int = 1
    start_ts: int = 0
    stop_ts: int = 0
    node_name: str = ""
    commit_info: str = ""
    trigger_type: TriggerType = TriggerType.MANUAL
    env_vars: Dict[str, str] = Field(default_factory=dict)
    pending_stage: Optional[int] = None
    stages: List[ActivityStage] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (Status.SUCCESS, Status.FAIL, Status.ABORT)

    def advance(self, status: Status) -> bool:
        # An activity alternates between Building and Pending while it waits
        # on approval gates, so only Waiting and terminal states are sticky.
        if status == Status.SKIP:
            raise ValueError("an activity cannot be skipped")
        if status == self.status:
            return False
        if self.is_terminal or status == Status.WAITING:
            logger.debug(f"ignoring activity transition {self.status.value} -> {status.value}")
            return False
        self.status = status
        return True

    def step(self, stage_ordinal: int, step_ordinal: int) -> ActivityStep:
        return self.stages[stage_ordinal].steps[step_ordinal]

    def status_fingerprint(self) -> Tuple:
        """Every status field of the tree, for change detection."""
        return (
            self.status,
            self.pending_stage,
            tuple(
                (stage.status, tuple(step.status for step in stage.steps))
                for stage in self.stages
            ),
        )

    def reset(self) -> None:
        self.status = Status.WAITING
        self.stop_ts = 0
        self.pending_stage = None
        for stage in self.stages:
            stage.reset()


def to_activity(
    pipeline: Pipeline,
    node_name: str,
    trigger_type: TriggerType = TriggerType.MANUAL,
    start_ts: Optional[int] = None,
) -> Activity:
    """Build a fresh activity whose tree mirrors ``pipeline`` exactly."""
    snapshot = pipeline.model_copy(deep=True)
    activity = Activity(
        pipeline=snapshot,
        run_sequence=pipeline.run_count + 1,
        start_ts=start_ts if start_ts is not None else now_ms(),
        node_name=node_name,
        trigger_type=trigger_type,
    )
    for i, stage in enumerate(snapshot.stages):
        activity.stages.append(
            ActivityStage(
                ordinal=i,
                name=stage.name,
                need_approval=stage.need_approve,
                steps=[
                    ActivityStep(ordinal=j, stage_ordinal=i, name=step.name)
                    for j, step in enumerate(stage.steps)
                ],
            )
        )
    init_env_vars(activity)
    return activity


def init_env_vars(activity: Activity) -> None:
    """Materialize run-scoped variables from run metadata and parameters."""
    p = activity.pipeline
    repository = branch = ""
    if p.stages and p.stages[0].steps and p.stages[0].steps[0].type == StepType.SCM:
        repository = p.stages[0].steps[0].repository
        branch = p.stages[0].steps[0].branch
    env = {
        "CICD_PIPELINE_NAME": p.name,
        "CICD_PIPELINE_ID": p.id,
        "CICD_NODE_NAME": activity.node_name,
        "CICD_ACTIVITY_ID": activity.id,
        "CICD_ACTIVITY_SEQUENCE": str(activity.run_sequence),
        "CICD_GIT_URL": repository,
        "CICD_GIT_BRANCH": branch,
        "CICD_GIT_COMMIT": activity.commit_info,
        "CICD_TRIGGER_TYPE": activity.trigger_type.value,
    }
    env.update(p.parameter_map())
    activity.env_vars = env


def set_commit(activity: Activity, sha: str) -> bool:
    """Record the resolved commit once; the first non-empty value wins."""
    if activity.commit_info or not sha:
        return False
    activity.commit_info = sha
    activity.env_vars["CICD_GIT_COMMIT"] = sha
    return True


def check_shape(activity: Activity) -> None:
    """Ensure the state tree still lines up with the definition snapshot."""
    definition = activity.pipeline.stages
    if len(activity.stages) != len(definition):
        raise DefinitionError(
            f"activity {activity.id} has {len(activity.stages)} stages, definition has {len(definition)}"
        )
    for i, (stage, stage_def) in enumerate(zip(activity.stages, definition)):
        if stage.ordinal != i or len(stage.steps) != len(stage_def.steps):
            raise DefinitionError(
                f"activity {activity.id}: stage {i} does not match its definition"
            )
        for j, step in enumerate(stage.steps):
            if step.ordinal != j or step.stage_ordinal != i:
                raise DefinitionError(
                    f"activity {activity.id}: step {i}/{j} has a stale ordinal"
                )
