"""Shared fixtures: a scriptable backend, a fake clock and pipeline builders."""

import random

import pytest

from pipewright.backends import InMemoryBackend
from pipewright.cleanup import default_hooks
from pipewright.driver import PipelineDriver
from pipewright.models import Conditions, Pipeline, Stage, Step, StepType
from pipewright.notify import InMemoryNotifier
from pipewright.persistence import InMemoryDocumentRepository, PipelineStore
from pipewright.service import PipelineService
from pipewright.sync import ActivityReconciler

START = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingHook:
    """Cleanup hook that counts how often it fired."""

    name = "recording"

    def __init__(self) -> None:
        self.activities = []

    async def run(self, backend, activity) -> None:
        self.activities.append(activity.id)


def _stage(name, *steps, parallel=False, need_approve=False, conditions=None):
    return Stage(
        name=name,
        steps=[
            step if isinstance(step, Step) else Step(name=step, shell_script=f"echo {step}")
            for step in steps
        ],
        parallel=parallel,
        need_approve=need_approve,
        conditions=Conditions(**conditions) if conditions else None,
    )


def _console(*steps, result=None, checkout=False):
    """Timestamped unit output with one shell invocation per step."""
    lines = ["00h00m00s000ms  Started by user admin"]
    if checkout:
        lines.append("00h00m00s200ms  Cloning the remote Git repository")
        lines.append("00h00m00s800ms  Checking out Revision abc123")
    for i, name in enumerate(steps, start=1):
        lines.append(f"00h00m{i:02d}s000ms  [demo] $ /bin/sh -xe /tmp/ci{i}.sh")
        lines.append(f"00h00m{i:02d}s100ms  + echo {name}")
        lines.append(f"00h00m{i:02d}s900ms  {name}")
    if result is not None:
        lines.append(f"00h00m{len(steps) + 1:02d}s000ms  Finished: {result}")
    return "\n".join(lines) + "\n"


def _pipeline(*stages, **kwargs):
    kwargs.setdefault("id", "pipeline-1")
    kwargs.setdefault("name", "demo")
    return Pipeline(stages=list(stages), **kwargs)


def _scm_step(name="clone", repository="https://example.com/demo.git", branch="main"):
    return Step(name=name, type=StepType.SCM, repository=repository, branch=branch)


@pytest.fixture
def stage():
    return _stage


@pytest.fixture
def pipeline_of():
    return _pipeline


@pytest.fixture
def scm_step():
    return _scm_step


@pytest.fixture
def console():
    return _console


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend(workers=["worker-1", "worker-2"])


@pytest.fixture
def hook():
    return RecordingHook()


@pytest.fixture
def driver(backend, hook, clock):
    return PipelineDriver(backend, hooks=[hook], rng=random.Random(7), clock=clock)


@pytest.fixture
def reconciler(backend, driver):
    return ActivityReconciler(backend, driver)


@pytest.fixture
def scoped_backend():
    """Backend running each stage as one unit, like Jenkins."""
    backend = InMemoryBackend(workers=["worker-1"])
    backend.stage_scoped_units = True
    return backend


@pytest.fixture
def scoped_driver(scoped_backend, hook, clock):
    return PipelineDriver(scoped_backend, hooks=[hook], rng=random.Random(7), clock=clock)


@pytest.fixture
def scoped_reconciler(scoped_backend, scoped_driver):
    return ActivityReconciler(scoped_backend, scoped_driver)


@pytest.fixture
def default_driver(backend, clock):
    """Driver wired with the real cleanup hooks."""
    return PipelineDriver(backend, hooks=default_hooks(), rng=random.Random(7), clock=clock)


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def service(driver, reconciler, notifier, clock):
    return PipelineService(
        store=PipelineStore(InMemoryDocumentRepository()),
        driver=driver,
        reconciler=reconciler,
        notifier=notifier,
        clock=clock,
    )
