"""Exception hierarchy for pipewright."""

from __future__ import annotations


class PipewrightError(Exception):
    """Base class for all pipewright errors."""


class DefinitionError(PipewrightError):
    """Malformed pipeline, stage, step or condition definition."""


class EmptyConditionError(DefinitionError):
    """Raised when a condition set with no predicates is evaluated."""


class MalformedConditionError(DefinitionError):
    """Raised when a predicate matches neither ``k=v`` nor ``k!=v``."""

    def __init__(self, predicate: str) -> None:
        super().__init__(f"cannot parse condition: {predicate}")
        self.predicate = predicate


class NoWorkerAvailable(PipewrightError):
    """No active execution node could be found."""


class BackendTransientError(PipewrightError):
    """The backend could not be reached or timed out."""


class BackendStateError(PipewrightError):
    """The backend returned data in an unexpected shape."""


class CleanupError(PipewrightError):
    """Post-completion housekeeping failed."""


class NotFoundError(PipewrightError):
    """A pipeline, activity or stored document does not exist."""


class ActivityStateError(PipewrightError):
    """The requested operation is not valid for the activity's status."""
