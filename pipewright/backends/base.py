"""Base execution backend interface for pipewright."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Dict, List, Optional

from ..segmenter import LogSegmenter
from ..units import InfoSnapshot, UnitRef, UnitResult, UnitState

if TYPE_CHECKING:
    from ..activity import Activity


def unit_ref(activity: "Activity", stage_ordinal: int, step_ordinal: Optional[int] = None) -> UnitRef:
    """Address the unit of one step, or the stage-level unit when ``step_ordinal`` is None."""
    return UnitRef(
        activity_id=activity.id,
        pipeline_name=activity.pipeline.name,
        stage_name=activity.stages[stage_ordinal].name,
        stage_ordinal=stage_ordinal,
        step_ordinal=step_ordinal,
    )


class BaseBackend(metaclass=abc.ABCMeta):
    """Abstract execution backend.

    The orchestrator only ever causes and observes work through these
    calls. Everything backend specific (job descriptors, script bodies,
    credentials) stays inside the concrete adapter.
    """

    segmenter: LogSegmenter = LogSegmenter()
    # True when every step of a stage shares one backend unit, so per-stage
    # operations must not be repeated for each step.
    stage_scoped_units: bool = False

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def prepare(self, activity: "Activity", stage_ordinal: int, step_ordinal: int) -> None:
        """Provision the unit for one step. Must be idempotent."""
        raise NotImplementedError

    @abc.abstractmethod
    async def trigger(self, ref: UnitRef, params: Optional[Dict[str, str]] = None) -> str:
        """Start the unit and return a backend-native handle."""
        raise NotImplementedError

    @abc.abstractmethod
    async def inspect(self, ref: UnitRef) -> InfoSnapshot:
        """Return the unit's current state, result and raw output."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel(self, ref: UnitRef, snapshot: InfoSnapshot) -> None:
        """Cancel a queued or running unit described by ``snapshot``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_artifact(self, ref: UnitRef) -> None:
        """Discard the last run record of a unit."""
        raise NotImplementedError

    @abc.abstractmethod
    async def active_workers(self) -> List[str]:
        """List the execution nodes currently able to take work."""
        raise NotImplementedError

    async def run_script(self, node_name: str, command: str) -> str:
        """Run a housekeeping shell command on ``node_name``."""
        raise NotImplementedError(f"{type(self).__name__} cannot run scripts")


__all__ = [
    "BaseBackend",
    "InfoSnapshot",
    "UnitRef",
    "UnitResult",
    "UnitState",
    "unit_ref",
]
