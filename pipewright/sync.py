"""Pull-based reconciliation of activity state against the execution backend."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from .activity import Activity, ActivityStage, ActivityStep, Status, set_commit
from .backends import BaseBackend, InfoSnapshot, UnitResult, unit_ref
from .errors import BackendTransientError, DefinitionError, PipewrightError
from .segmenter import Segment

if TYPE_CHECKING:
    from .driver import PipelineDriver

logger = logging.getLogger(__name__)

_DONE = (Status.SUCCESS, Status.SKIP)

_LAST_STATUS = {
    UnitResult.SUCCESS: Status.SUCCESS,
    UnitResult.FAILURE: Status.FAIL,
    UnitResult.ABORTED: Status.ABORT,
}


class ActivityReconciler:
    """Fold backend observations into an activity's state tree.

    ``sync`` is safe to call repeatedly. It never triggers work itself;
    continuation (next step, next stage) is handed to the driver.
    """

    def __init__(self, backend: BaseBackend, driver: "PipelineDriver") -> None:
        self.backend = backend
        self.driver = driver

    async def sync(self, activity: Activity) -> bool:
        """Run one reconciliation pass. Returns ``True`` if any status changed."""
        if activity.is_terminal:
            return False
        before = (activity.status_fingerprint(), activity.commit_info)
        try:
            await self._sync(activity)
        except PipewrightError as exc:
            logger.error(f"error syncing activity {activity.id}: {exc}")
        changed = (activity.status_fingerprint(), activity.commit_info) != before
        if changed:
            logger.debug(f"activity {activity.id} changed, now {activity.status.value}")
        return changed

    async def _sync(self, activity: Activity) -> None:
        for stage in activity.stages:
            if stage.status in _DONE:
                continue
            if stage.status in (Status.FAIL, Status.ABORT, Status.PENDING):
                break
            if stage.status == Status.WAITING:
                # an earlier stage finished without its successor being started
                await self._enter_stage(activity, stage.ordinal)
                break
            if not await self._sync_stage(activity, stage):
                break

    async def _enter_stage(self, activity: Activity, ordinal: int) -> None:
        try:
            if ordinal == 0:
                await self.driver.run_stage(activity, 0)
            else:
                await self.driver.advance_to_stage(activity, ordinal)
        except PipewrightError as exc:
            logger.error(f"error running stage {ordinal} of {activity.id}, will retry: {exc}")

    async def _inspect_stage(self, activity: Activity, stage: ActivityStage) -> Optional[InfoSnapshot]:
        ref = unit_ref(activity, stage.ordinal)
        try:
            return await self.backend.inspect(ref)
        except BackendTransientError as exc:
            logger.warning(f"no info for {ref} yet: {exc}")
            return None

    async def _sync_stage(self, activity: Activity, stage: ActivityStage) -> bool:
        """Reconcile one Building stage. Returns ``True`` if it just succeeded."""
        snapshot = await self._inspect_stage(activity, stage)
        if snapshot is None or not snapshot.started:
            await self._continue(activity, stage, unit_succeeded=False)
            return False

        activity.advance(Status.BUILDING)
        stage.advance(Status.BUILDING)
        if snapshot.start_ts:
            stage.start_ts = snapshot.start_ts
        if set_commit(activity, snapshot.commit):
            logger.info(f"activity {activity.id} resolved commit {snapshot.commit}")

        result = snapshot.result or self.backend.segmenter.detect_result(snapshot.raw_output)
        self.parse_steps(stage, snapshot, result)

        if result == UnitResult.SUCCESS and all(step.status in _DONE for step in stage.steps):
            stage.advance(Status.SUCCESS)
            stage.duration = snapshot.duration
            logger.info(f"stage '{stage.name}' of {activity.id} succeeded")
            if stage.ordinal == len(activity.stages) - 1:
                await self.driver.complete_activity(
                    activity, Status.SUCCESS, stage.start_ts + snapshot.duration
                )
                return False
            return True

        if result in (UnitResult.FAILURE, UnitResult.ABORTED):
            status = _LAST_STATUS[result]
            stage.advance(status)
            stage.duration = snapshot.duration
            logger.info(f"stage '{stage.name}' of {activity.id} finished: {status.value}")
            await self.driver.complete_activity(
                activity, status, stage.start_ts + snapshot.duration
            )
            return False

        await self._continue(activity, stage, unit_succeeded=result == UnitResult.SUCCESS)
        return False

    def parse_steps(
        self, stage: ActivityStage, snapshot: InfoSnapshot, result: Optional[UnitResult]
    ) -> None:
        """Map output segments onto the stage's non-skipped steps.

        Earlier segments are Success; only the last one can carry the unit's
        terminal result. Steps without a segment keep their status.
        """
        mapped = [step for step in stage.steps if step.status != Status.SKIP]
        if not mapped:
            return
        segmenter = self.backend.segmenter
        log = segmenter.split(snapshot.raw_output)
        last_status = _LAST_STATUS.get(result, Status.BUILDING)

        if segmenter.has_checkout(snapshot.raw_output):
            # the checkout runs before the first shell marker
            self._apply(mapped[0], log.preamble, last_status, snapshot.start_ts)
            return

        segments = log.segments[: len(mapped)]
        if not segments and result == UnitResult.FAILURE:
            mapped[0].advance(Status.FAIL)
            return
        for i, segment in enumerate(segments):
            status = last_status if i == len(log.segments) - 1 else Status.SUCCESS
            self._apply(mapped[i], segment, status, snapshot.start_ts)

    @staticmethod
    def _apply(step: ActivityStep, segment: Segment, status: Status, unit_start: int) -> None:
        step.advance(status)
        if segment.start_offset is not None:
            step.start_ts = unit_start + segment.start_offset
        if step.status in (Status.SUCCESS, Status.FAIL) and segment.duration is not None:
            step.duration = segment.duration

    async def _continue(self, activity: Activity, stage: ActivityStage, unit_succeeded: bool) -> None:
        """Hand never-triggered steps of a Building stage to the driver."""
        stage_def = activity.pipeline.stages[stage.ordinal]
        if stage_def.parallel:
            pending: List[ActivityStep] = [s for s in stage.steps if s.status == Status.WAITING]
        else:
            following = next((s for s in stage.steps if s.status not in _DONE), None)
            pending = []
            if (
                following is not None
                and following.status == Status.WAITING
                and (unit_succeeded or following.ordinal == 0)
            ):
                pending = [following]
        for step in pending:
            try:
                await self.driver.run_step(activity, stage.ordinal, step.ordinal)
            except PipewrightError as exc:
                logger.error(f"error running step {stage.ordinal}/{step.ordinal}, will retry: {exc}")

    async def step_log(
        self, activity: Activity, stage_ordinal: int, step_ordinal: int, previous_log: str = ""
    ) -> str:
        """Output of one step; only the part after ``previous_log`` when it matches."""
        if not (
            0 <= stage_ordinal < len(activity.stages)
            and 0 <= step_ordinal < len(activity.stages[stage_ordinal].steps)
        ):
            raise DefinitionError("ordinal out of range")
        stage = activity.stages[stage_ordinal]
        step = stage.steps[step_ordinal]
        if step.status == Status.SKIP:
            return ""
        snapshot = await self.backend.inspect(unit_ref(activity, stage_ordinal))
        segmenter = self.backend.segmenter
        log = segmenter.split(snapshot.raw_output)
        mapped = [s.ordinal for s in stage.steps if s.status != Status.SKIP]
        index = mapped.index(step_ordinal)
        if segmenter.has_checkout(snapshot.raw_output):
            text = log.preamble.text if index == 0 else ""
        elif index < len(log.segments):
            text = log.segments[index].body()
        else:
            text = ""
        if previous_log and text.startswith(previous_log):
            return text[len(previous_log):]
        return text

