"""Post-completion housekeeping for finished activities."""

from __future__ import annotations

import abc
import logging
from typing import TYPE_CHECKING, Iterable, List

from .errors import CleanupError

if TYPE_CHECKING:
    from .activity import Activity
    from .backends import BaseBackend

logger = logging.getLogger(__name__)


class CleanupHook(metaclass=abc.ABCMeta):
    """One piece of teardown run on the activity's worker node."""

    name = "cleanup"

    @abc.abstractmethod
    def command(self, activity: "Activity") -> str | None:
        """Shell command to run, or None when there is nothing to clean."""
        raise NotImplementedError

    async def run(self, backend: "BaseBackend", activity: "Activity") -> None:
        command = self.command(activity)
        if not command:
            return
        logger.debug(f"{self.name} on {activity.node_name}: {command}")
        try:
            result = await backend.run_script(activity.node_name, command)
        except Exception as exc:
            raise CleanupError(f"{self.name} failed for activity {activity.id}: {exc}") from exc
        logger.debug(f"{self.name} result: {result}")


class ServiceContainerCleanup(CleanupHook):
    """Remove side-car service containers labelled with the activity id."""

    name = "service-container cleanup"

    def command(self, activity: "Activity") -> str:
        return f"docker ps --filter label=activityid={activity.id} -q | xargs -r docker rm -f"


class WorkspaceCleanup(CleanupHook):
    """Remove the activity workspace unless the pipeline keeps it."""

    name = "workspace cleanup"

    def command(self, activity: "Activity") -> str | None:
        if activity.pipeline.keep_workspace:
            return None
        return f"rm -rf ${{JENKINS_HOME}}/workspace/{activity.id}"


def default_hooks() -> List[CleanupHook]:
    return [ServiceContainerCleanup(), WorkspaceCleanup()]


async def run_cleanup(
    backend: "BaseBackend", activity: "Activity", hooks: Iterable[CleanupHook]
) -> List[CleanupError]:
    """Run every hook, logging failures. Never touches the activity status."""
    errors: List[CleanupError] = []
    for hook in hooks:
        try:
            await hook.run(backend, activity)
        except CleanupError as exc:
            logger.error(f"error cleaning up on worker node: {exc}")
            errors.append(exc)
    logger.info(f"activity '{activity.id}' complete")
    return errors
