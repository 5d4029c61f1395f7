"""Value types exchanged with execution backends."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class UnitState(str, Enum):
    MISSING = "missing"  # backend has no record of the unit
    IDLE = "idle"  # provisioned, never run in this run sequence
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"


class UnitResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"


class UnitRef(BaseModel):
    """Address of a backend unit.

    ``step_ordinal`` is ``None`` for the stage-level unit whose combined
    output the reconciler reads.
    """

    activity_id: str
    pipeline_name: str
    stage_name: str
    stage_ordinal: int
    step_ordinal: Optional[int] = None

    @property
    def is_stage(self) -> bool:
        return self.step_ordinal is None

    def stage_ref(self) -> "UnitRef":
        return self.model_copy(update={"step_ordinal": None})

    def __str__(self) -> str:
        parts = [self.pipeline_name, self.activity_id, self.stage_name]
        if self.step_ordinal is not None:
            parts.append(str(self.step_ordinal))
        return "_".join(parts)


class InfoSnapshot(BaseModel):
    """What the backend knows about one unit at the time of asking."""

    state: UnitState = UnitState.IDLE
    result: Optional[UnitResult] = None
    handle: Optional[str] = None
    start_ts: int = 0
    duration: int = 0
    raw_output: str = ""
    commit: str = ""

    @property
    def started(self) -> bool:
        return self.state in (UnitState.RUNNING, UnitState.FINISHED)

    @property
    def in_flight(self) -> bool:
        return self.state in (UnitState.QUEUED, UnitState.RUNNING)
