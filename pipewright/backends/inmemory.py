"""In-memory execution backend for testing."""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Tuple, Union

from .base import BaseBackend, InfoSnapshot, UnitRef, UnitResult, UnitState, unit_ref

if TYPE_CHECKING:
    from ..activity import Activity


class InMemoryBackend(BaseBackend):
    """Scriptable backend that records every call.

    Tests drive unit progress with ``set_snapshot``/``start``/``finish`` and
    assert on ``calls``. Failures can be injected per operation, or per
    operation and unit, through ``fail``.
    """

    def __init__(self, workers: Optional[Iterable[str]] = None) -> None:
        self.workers: List[str] = list(workers) if workers is not None else ["worker-1"]
        self.snapshots: Dict[str, InfoSnapshot] = {}
        self.prepared: set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self.scripts: List[Tuple[str, str]] = []
        self._failures: Dict[Union[str, Tuple[str, str]], Exception] = {}
        self._handles = itertools.count(1)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Test helpers
    def fail(self, op: str, error: Exception, ref: Optional[UnitRef] = None) -> None:
        key = (op, str(ref)) if ref is not None else op
        self._failures[key] = error

    def clear_failures(self) -> None:
        self._failures.clear()

    def calls_for(self, op: str) -> List[str]:
        return [key for name, key in self.calls if name == op]

    def set_snapshot(self, ref: UnitRef, snapshot: InfoSnapshot) -> None:
        self.snapshots[str(ref)] = snapshot

    def start(
        self, activity: "Activity", stage_ordinal: int, output: str = "", start_ts: int = 0, commit: str = ""
    ) -> None:
        self.set_snapshot(
            unit_ref(activity, stage_ordinal),
            InfoSnapshot(
                state=UnitState.RUNNING,
                handle=f"run-{next(self._handles)}",
                start_ts=start_ts,
                raw_output=output,
                commit=commit,
            ),
        )

    def finish(
        self,
        activity: "Activity",
        stage_ordinal: int,
        result: UnitResult,
        output: str,
        start_ts: int = 0,
        duration: int = 0,
        commit: str = "",
    ) -> None:
        self.set_snapshot(
            unit_ref(activity, stage_ordinal),
            InfoSnapshot(
                state=UnitState.FINISHED,
                result=result,
                start_ts=start_ts,
                duration=duration,
                raw_output=output,
                commit=commit,
            ),
        )

    def _check(self, op: str, ref: Optional[UnitRef] = None) -> None:
        error = None
        if ref is not None:
            error = self._failures.get((op, str(ref)))
        error = error or self._failures.get(op)
        if error is not None:
            raise error

    # ------------------------------------------------------------------
    # Backend API
    async def prepare(self, activity: "Activity", stage_ordinal: int, step_ordinal: int) -> None:
        ref = unit_ref(activity, stage_ordinal, step_ordinal)
        self._check("prepare", ref)
        async with self._lock:
            self.calls.append(("prepare", str(ref)))
            self.prepared.add(str(ref))
            self.prepared.add(str(ref.stage_ref()))

    async def trigger(self, ref: UnitRef, params: Optional[Dict[str, str]] = None) -> str:
        self._check("trigger", ref)
        async with self._lock:
            self.calls.append(("trigger", str(ref)))
            handle = f"queue-{next(self._handles)}"
            self.snapshots[str(ref)] = InfoSnapshot(state=UnitState.QUEUED, handle=handle)
            return handle

    async def inspect(self, ref: UnitRef) -> InfoSnapshot:
        self._check("inspect", ref)
        key = str(ref)
        if key in self.snapshots:
            return self.snapshots[key].model_copy()
        if key in self.prepared:
            return InfoSnapshot(state=UnitState.IDLE)
        return InfoSnapshot(state=UnitState.MISSING)

    async def cancel(self, ref: UnitRef, snapshot: InfoSnapshot) -> None:
        self._check("cancel", ref)
        async with self._lock:
            self.calls.append(("cancel", str(ref)))
            self.snapshots[str(ref)] = InfoSnapshot(
                state=UnitState.FINISHED, result=UnitResult.ABORTED, handle=snapshot.handle
            )

    async def delete_artifact(self, ref: UnitRef) -> None:
        self._check("delete_artifact", ref)
        async with self._lock:
            self.calls.append(("delete_artifact", str(ref)))
            self.snapshots.pop(str(ref), None)
            # the stage output is made of its steps' output
            self.snapshots.pop(str(ref.stage_ref()), None)

    async def active_workers(self) -> List[str]:
        self._check("active_workers")
        return list(self.workers)

    async def run_script(self, node_name: str, command: str) -> str:
        self._check("run_script")
        self.scripts.append((node_name, command))
        return ""
