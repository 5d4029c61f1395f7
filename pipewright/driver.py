"""Orchestration driver: turns definitions into activities and triggers work."""

from __future__ import annotations

import logging
import random
from typing import Callable, Iterable, List, Optional

from .activity import (
    Activity,
    Status,
    TriggerType,
    check_shape,
    init_env_vars,
    now_ms,
    to_activity,
)
from .backends import BaseBackend, UnitState, unit_ref
from .cleanup import CleanupHook, default_hooks, run_cleanup
from .conditions import evaluate, has_conditions
from .errors import ActivityStateError, DefinitionError, NoWorkerAvailable, PipewrightError
from .models import Pipeline

logger = logging.getLogger(__name__)

_DONE = (Status.SUCCESS, Status.SKIP)
_RAN = (Status.SUCCESS, Status.FAIL, Status.ABORT)


class PipelineDriver:
    """Advances an activity by triggering backend work.

    The driver never waits for work to finish. Completion becomes visible
    through ``ActivityReconciler.sync``, which calls back into
    ``run_stage``/``run_step``/``complete_activity``.
    """

    def __init__(
        self,
        backend: BaseBackend,
        hooks: Optional[Iterable[CleanupHook]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.backend = backend
        self.hooks: List[CleanupHook] = list(hooks) if hooks is not None else default_hooks()
        self._rng = rng or random.Random()
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    async def pick_worker(self) -> str:
        """Pick one active worker uniformly at random."""
        try:
            nodes = await self.backend.active_workers()
        except PipewrightError as exc:
            raise NoWorkerAvailable(f"fail to find an active node to work: {exc}") from exc
        if not nodes:
            raise NoWorkerAvailable(
                "no active worker node available, add at least one worker or check if it is ready"
            )
        node = self._rng.choice(nodes)
        logger.debug(f"pick {node} to work")
        return node

    async def run_pipeline(
        self, pipeline: Pipeline, trigger_type: TriggerType = TriggerType.MANUAL
    ) -> Activity:
        """Create an activity for ``pipeline``, provision every step and start stage 0."""
        pipeline.validate_definition()
        node_name = await self.pick_worker()
        activity = to_activity(pipeline, node_name, trigger_type, start_ts=self._clock())
        logger.info(
            f"running pipeline '{pipeline.name}' as activity {activity.id} on {node_name}"
        )
        await self.prepare_all(activity)
        await self.run_stage(activity, 0)
        return activity

    async def prepare_all(self, activity: Activity) -> None:
        for stage in activity.stages:
            for step in stage.steps:
                logger.debug(f"preparing unit {stage.name}/{step.ordinal} of {activity.id}")
                await self.backend.prepare(activity, stage.ordinal, step.ordinal)

    async def advance_to_stage(self, activity: Activity, ordinal: int) -> None:
        """Enter stage ``ordinal``, stopping at its approval gate if it has one."""
        stage = activity.stages[ordinal]
        if stage.need_approval and stage.status == Status.WAITING:
            stage.advance(Status.PENDING)
            activity.advance(Status.PENDING)
            activity.pending_stage = ordinal
            logger.info(f"activity {activity.id} pending approval for stage '{stage.name}'")
            return
        await self.run_stage(activity, ordinal)

    async def run_stage(self, activity: Activity, ordinal: int) -> None:
        check_shape(activity)
        if not 0 <= ordinal < len(activity.stages):
            raise DefinitionError("error run stage, stage index out of range")
        stage_def = activity.pipeline.stages[ordinal]
        stage = activity.stages[ordinal]
        logger.info(f"run stage: {stage_def.name}")
        now = self._clock()

        passed = True
        if has_conditions(stage_def):
            passed = evaluate(activity.env_vars, stage_def.conditions)
        if not passed:
            logger.info(f"stage '{stage_def.name}' skipped by its conditions")
            stage.advance(Status.SKIP)
            if activity.pending_stage == ordinal:
                activity.pending_stage = None
            if ordinal == len(activity.stages) - 1:
                await self.complete_activity(activity, Status.SUCCESS, now)
            else:
                await self.advance_to_stage(activity, ordinal + 1)
            return

        stage.start_ts = now
        stage.advance(Status.BUILDING)
        activity.advance(Status.BUILDING)
        if activity.pending_stage == ordinal:
            activity.pending_stage = None
        if self.backend.stage_scoped_units:
            await self._run_stage_unit(activity, ordinal)
        elif stage_def.parallel:
            for step in stage.steps:
                await self.run_step(activity, ordinal, step.ordinal)
        else:
            await self.run_step(activity, ordinal, 0)

    async def _run_stage_unit(self, activity: Activity, ordinal: int) -> None:
        """Start a stage whose steps share one backend unit.

        The unit runs every step it was provisioned with, so step conditions
        are settled before the trigger and the unit is provisioned again
        without the skipped steps.
        """
        stage_def = activity.pipeline.stages[ordinal]
        stage = activity.stages[ordinal]
        for step_def, step in zip(stage_def.steps, stage.steps):
            if has_conditions(step_def) and not evaluate(activity.env_vars, step_def.conditions):
                logger.info(f"step '{step_def.name}' skipped by its conditions")
                step.advance(Status.SKIP)

        runnable = [step for step in stage.steps if step.status != Status.SKIP]
        if not runnable:
            await self._finish_skipped_stage(activity, ordinal, self._clock())
            return
        if any(has_conditions(step_def) for step_def in stage_def.steps):
            await self.backend.prepare(activity, ordinal, runnable[0].ordinal)
        for step in runnable if stage_def.parallel else runnable[:1]:
            await self.run_step(activity, ordinal, step.ordinal)

    async def _finish_skipped_stage(self, activity: Activity, ordinal: int, now: int) -> None:
        stage = activity.stages[ordinal]
        stage.advance(Status.SUCCESS)
        stage.duration = now - stage.start_ts
        if ordinal == len(activity.stages) - 1:
            await self.complete_activity(activity, Status.SUCCESS, now)
        else:
            await self.advance_to_stage(activity, ordinal + 1)

    async def run_step(self, activity: Activity, stage_ordinal: int, step_ordinal: int) -> Optional[str]:
        """Trigger one step, or skip it and cascade when its conditions fail.

        Returns the backend handle when the step was triggered.
        """
        if not (
            0 <= stage_ordinal < len(activity.stages)
            and 0 <= step_ordinal < len(activity.stages[stage_ordinal].steps)
        ):
            raise DefinitionError("error run step, step index out of range")
        stage_def = activity.pipeline.stages[stage_ordinal]
        step_def = stage_def.steps[step_ordinal]
        stage = activity.stages[stage_ordinal]
        step = stage.steps[step_ordinal]

        passed = True
        if has_conditions(step_def):
            passed = evaluate(activity.env_vars, step_def.conditions)
        if not passed:
            logger.info(f"step '{step_def.name}' skipped by its conditions")
            step.advance(Status.SKIP)
            if all(s.status in _DONE for s in stage.steps):
                await self._finish_skipped_stage(activity, stage_ordinal, self._clock())
            elif not stage_def.parallel and step_ordinal + 1 < len(stage.steps):
                await self.run_step(activity, stage_ordinal, step_ordinal + 1)
            return None

        ref = unit_ref(activity, stage_ordinal, step_ordinal)
        logger.debug(f"run step: {ref}")
        handle = await self.backend.trigger(ref, {})
        step.start_ts = self._clock()
        step.advance(Status.BUILDING)
        return handle

    async def approve(self, activity: Activity) -> None:
        """Resume an activity waiting at an approval gate."""
        if activity.status != Status.PENDING or activity.pending_stage is None:
            raise ActivityStateError(f"activity {activity.id} is not pending approval")
        ordinal = activity.pending_stage
        logger.info(f"activity {activity.id} approved at stage {ordinal}")
        await self.run_stage(activity, ordinal)

    # ------------------------------------------------------------------
    # Abort
    async def stop_activity(self, activity: Activity) -> None:
        """Abort the first unfinished stage; later stages are left Waiting.

        Only one stage is live at a time, so only that stage is cancelled.
        Individual cancel failures are logged and the abort still goes ahead.
        """
        logger.debug(f"stopping activity, current status: {activity.status.value}")
        if activity.is_terminal:
            logger.info(f"activity {activity.id} already {activity.status.value}, nothing to stop")
            return
        now = self._clock()
        for stage in activity.stages:
            if stage.status in _DONE:
                continue
            ordinals = [s.ordinal for s in stage.steps]
            if self.backend.stage_scoped_units:
                ordinals = ordinals[:1]
            for step_ordinal in ordinals:
                try:
                    await self.stop_step(activity, stage.ordinal, step_ordinal)
                except PipewrightError as exc:
                    logger.error(f"stop step got: {exc}")
                    continue
            for step in stage.steps:
                if step.status == Status.BUILDING:
                    step.advance(Status.ABORT)
                    step.duration = now - step.start_ts if step.start_ts else 0
            logger.debug(f"aborting stage, current status: {stage.status.value}")
            stage.advance(Status.ABORT)
            stage.duration = now - stage.start_ts if stage.start_ts else 0
            break
        await self.complete_activity(activity, Status.ABORT, now)

    async def stop_step(self, activity: Activity, stage_ordinal: int, step_ordinal: int) -> bool:
        """Cancel one step if it is queued or running. Returns ``True`` if cancelled."""
        ref = unit_ref(activity, stage_ordinal, step_ordinal)
        snapshot = await self.backend.inspect(ref)
        step = activity.step(stage_ordinal, step_ordinal)
        logger.debug(f"aborting step, current status: {step.status.value}")
        if not snapshot.in_flight:
            return False
        await self.backend.cancel(ref, snapshot)
        step.advance(Status.ABORT)
        step.duration = self._clock() - step.start_ts if step.start_ts else 0
        return True

    # ------------------------------------------------------------------
    # Rerun
    async def rerun_activity(self, activity: Activity, run_count: Optional[int] = None) -> None:
        """Run a finished activity again under the same id.

        ``run_count`` is the pipeline's current run counter; the new run
        sequence is one above it.
        """
        if not activity.is_terminal:
            raise ActivityStateError(
                f"activity {activity.id} is {activity.status.value}, stop it before rerunning"
            )
        check_shape(activity)
        first = await self.backend.inspect(unit_ref(activity, 0, 0))
        missing = first.state == UnitState.MISSING
        if missing:
            logger.info(f"unit records of {activity.id} are missing, re-provisioning")
        else:
            await self.delete_former_runs(activity)

        activity.node_name = await self.pick_worker()
        logger.info(f"rerun activity {activity.id}, got node {activity.node_name}")
        try:
            await self.prepare_all(activity)
        except PipewrightError as exc:
            if missing:
                raise
            logger.error(f"fail to update unit config before rerun: {exc}")

        base = activity.pipeline.run_count if run_count is None else run_count
        activity.reset()
        activity.run_sequence = base + 1
        activity.start_ts = max(self._clock(), activity.start_ts)
        activity.trigger_type = TriggerType.RERUN
        init_env_vars(activity)
        await self.run_stage(activity, 0)

    async def delete_former_runs(self, activity: Activity) -> None:
        """Discard backend records of every step that ran in the last run."""
        for stage in activity.stages:
            ran = [step for step in stage.steps if step.status in _RAN]
            if not ran and stage.status not in _RAN:
                continue
            if self.backend.stage_scoped_units:
                await self.backend.delete_artifact(unit_ref(activity, stage.ordinal))
                continue
            for step in ran:
                ref = unit_ref(activity, stage.ordinal, step.ordinal)
                logger.info(f"deleting: {ref}")
                await self.backend.delete_artifact(ref)

    # ------------------------------------------------------------------
    # Completion
    async def complete_activity(
        self, activity: Activity, status: Status, stop_ts: Optional[int] = None
    ) -> bool:
        """Move the activity to a terminal status and run cleanup, exactly once."""
        if activity.is_terminal:
            logger.debug(f"activity {activity.id} already {activity.status.value}")
            return False
        activity.advance(status)
        activity.stop_ts = stop_ts if stop_ts is not None else self._clock()
        activity.pending_stage = None
        logger.info(f"activity {activity.id} finished: {status.value}")
        await self.on_activity_complete(activity)
        return True

    async def on_activity_complete(self, activity: Activity) -> None:
        await run_cleanup(self.backend, activity, self.hooks)
