"""Reconciler tests: segment mapping, stage outcomes and continuation."""

import pytest

from pipewright.activity import Status, to_activity
from pipewright.backends import InfoSnapshot, UnitResult, UnitState, unit_ref
from pipewright.errors import BackendStateError, BackendTransientError
from pipewright.models import Conditions, Step

START = 1_700_000_000_000


@pytest.mark.asyncio
async def test_failure_in_second_segment(driver, reconciler, console, backend, hook, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test", "package")))
    backend.finish(
        activity, 0, UnitResult.FAILURE, console("compile", "test", result="FAILURE"),
        start_ts=START, duration=3000,
    )

    assert await reconciler.sync(activity)

    steps = activity.stages[0].steps
    assert [s.status for s in steps] == [Status.SUCCESS, Status.FAIL, Status.WAITING]
    assert activity.stages[0].status == Status.FAIL
    assert activity.stages[0].duration == 3000
    assert activity.status == Status.FAIL
    assert activity.stop_ts == START + 3000
    assert hook.activities == [activity.id]

    assert steps[0].start_ts == START + 1100
    assert steps[0].duration == 800
    assert steps[1].start_ts == START + 2100
    assert steps[1].duration == 900


@pytest.mark.asyncio
async def test_second_sync_without_news_reports_no_change(
    driver, reconciler, console, backend, stage, pipeline_of
):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test")))
    backend.start(activity, 0, console("compile", "test"), start_ts=START, commit="abc123")

    assert await reconciler.sync(activity)
    assert activity.step(0, 0).status == Status.SUCCESS
    assert activity.step(0, 1).status == Status.BUILDING
    assert activity.step(0, 1).duration == 0
    assert activity.commit_info == "abc123"

    assert not await reconciler.sync(activity)
    assert not await reconciler.sync(activity)
    assert len(backend.calls_for("trigger")) == 1


@pytest.mark.asyncio
async def test_unstarted_unit_leaves_activity_alone(driver, reconciler, console, backend, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile")))

    assert not await reconciler.sync(activity)
    assert activity.stages[0].status == Status.BUILDING
    assert activity.step(0, 0).status == Status.BUILDING


@pytest.mark.asyncio
async def test_first_commit_wins(driver, reconciler, console, backend, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test")))
    backend.start(activity, 0, console("compile"), start_ts=START, commit="first")
    await reconciler.sync(activity)
    backend.start(activity, 0, console("compile", "test"), start_ts=START, commit="second")
    await reconciler.sync(activity)

    assert activity.commit_info == "first"
    assert activity.env_vars["CICD_GIT_COMMIT"] == "first"


@pytest.mark.asyncio
async def test_sequential_stage_continues_step_by_step(
    driver, reconciler, console, backend, hook, stage, pipeline_of
):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test", "package")))
    refs = [str(unit_ref(activity, 0, i)) for i in range(3)]

    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)
    assert await reconciler.sync(activity)
    assert activity.step(0, 0).status == Status.SUCCESS
    assert activity.step(0, 1).status == Status.BUILDING
    assert backend.calls_for("trigger") == refs[:2]

    # nothing new: the running step must not be triggered again
    assert not await reconciler.sync(activity)
    assert backend.calls_for("trigger") == refs[:2]

    backend.finish(
        activity, 0, UnitResult.SUCCESS, console("compile", "test", result="SUCCESS"), start_ts=START
    )
    assert await reconciler.sync(activity)
    assert backend.calls_for("trigger") == refs

    backend.finish(
        activity, 0, UnitResult.SUCCESS, console("compile", "test", "package", result="SUCCESS"),
        start_ts=START, duration=4000,
    )
    assert await reconciler.sync(activity)
    assert [s.status for s in activity.stages[0].steps] == [Status.SUCCESS] * 3
    assert activity.stages[0].status == Status.SUCCESS
    assert activity.stages[0].duration == 4000
    assert activity.status == Status.SUCCESS
    assert activity.stop_ts == START + 4000
    assert hook.activities == [activity.id]

    assert not await reconciler.sync(activity)


@pytest.mark.asyncio
async def test_success_moves_on_to_next_stage(driver, reconciler, console, backend, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile"), stage("publish", "push")))
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)

    assert await reconciler.sync(activity)

    assert activity.stages[0].status == Status.SUCCESS
    assert activity.stages[1].status == Status.BUILDING
    assert activity.status == Status.BUILDING
    assert backend.calls_for("trigger")[-1] == str(unit_ref(activity, 1, 0))


@pytest.mark.asyncio
async def test_result_is_read_from_output_when_backend_has_none(
    driver, reconciler, console, backend, stage, pipeline_of
):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test")))
    backend.set_snapshot(
        unit_ref(activity, 0),
        InfoSnapshot(
            state=UnitState.RUNNING,
            start_ts=START,
            raw_output=console("compile", "test", result="FAILURE"),
        ),
    )

    await reconciler.sync(activity)

    assert activity.step(0, 1).status == Status.FAIL
    assert activity.status == Status.FAIL


@pytest.mark.asyncio
async def test_failure_without_segments_fails_first_step(driver, reconciler, console, backend, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test")))
    backend.finish(activity, 0, UnitResult.FAILURE, console(result="FAILURE"), start_ts=START)

    await reconciler.sync(activity)

    assert activity.step(0, 0).status == Status.FAIL
    assert activity.step(0, 1).status == Status.WAITING
    assert activity.status == Status.FAIL


@pytest.mark.asyncio
async def test_aborted_unit_aborts_activity(driver, reconciler, console, backend, hook, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile")))
    backend.finish(activity, 0, UnitResult.ABORTED, console("compile"), start_ts=START)

    await reconciler.sync(activity)

    assert activity.step(0, 0).status == Status.ABORT
    assert activity.stages[0].status == Status.ABORT
    assert activity.status == Status.ABORT
    assert hook.activities == [activity.id]


@pytest.mark.asyncio
async def test_checkout_step_uses_preamble(driver, reconciler, console, backend, stage, pipeline_of, scm_step):
    pipeline = pipeline_of(stage("source", scm_step()), stage("build", "compile"))
    activity = await driver.run_pipeline(pipeline)
    assert activity.env_vars["CICD_GIT_URL"] == "https://example.com/demo.git"
    assert activity.env_vars["CICD_GIT_BRANCH"] == "main"

    backend.finish(
        activity, 0, UnitResult.SUCCESS, console(result="SUCCESS", checkout=True),
        start_ts=START, duration=1000, commit="abc123",
    )
    assert await reconciler.sync(activity)

    clone = activity.step(0, 0)
    assert clone.status == Status.SUCCESS
    assert clone.start_ts == START
    assert clone.duration == 1000
    assert activity.commit_info == "abc123"
    assert activity.env_vars["CICD_GIT_COMMIT"] == "abc123"
    assert activity.stages[1].status == Status.BUILDING


@pytest.mark.asyncio
async def test_approval_gate_after_stage_success(driver, reconciler, console, backend, stage, pipeline_of):
    pipeline = pipeline_of(stage("build", "compile"), stage("deploy", "ship", need_approve=True))
    activity = await driver.run_pipeline(pipeline)
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)

    assert await reconciler.sync(activity)
    assert activity.status == Status.PENDING
    assert activity.stages[1].status == Status.PENDING
    assert activity.pending_stage == 1
    assert len(backend.calls_for("trigger")) == 1

    assert not await reconciler.sync(activity)

    await driver.approve(activity)
    assert activity.status == Status.BUILDING
    assert backend.calls_for("trigger")[-1] == str(unit_ref(activity, 1, 0))


@pytest.mark.asyncio
async def test_skipped_steps_are_not_mapped(driver, reconciler, console, backend, stage, pipeline_of):
    pipeline = pipeline_of(
        stage(
            "build",
            "compile",
            Step(name="docs", conditions=Conditions(all=["DOCS=yes"])),
            "package",
        )
    )
    activity = await driver.run_pipeline(pipeline)
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)

    await reconciler.sync(activity)

    # docs was skipped by its condition, package got triggered
    assert activity.step(0, 1).status == Status.SKIP
    assert activity.step(0, 2).status == Status.BUILDING

    backend.finish(
        activity, 0, UnitResult.SUCCESS, console("compile", "package", result="SUCCESS"), start_ts=START
    )
    await reconciler.sync(activity)

    assert activity.step(0, 2).status == Status.SUCCESS
    assert activity.status == Status.SUCCESS


@pytest.mark.asyncio
async def test_skipping_remaining_step_completes_through_sync(
    driver, reconciler, console, backend, hook, stage, pipeline_of
):
    pipeline = pipeline_of(stage("build", "compile", Step(name="docs", conditions=Conditions(all=["DOCS=yes"]))))
    activity = await driver.run_pipeline(pipeline)
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)

    assert await reconciler.sync(activity)

    assert activity.step(0, 1).status == Status.SKIP
    assert activity.stages[0].status == Status.SUCCESS
    assert activity.status == Status.SUCCESS
    assert hook.activities == [activity.id]


@pytest.mark.asyncio
async def test_parallel_stage_retriggers_steps_that_never_started(
    driver, reconciler, console, backend, stage, pipeline_of
):
    pipeline = pipeline_of(stage("checks", "lint", "unit", parallel=True))
    activity = to_activity(pipeline, "worker-1", start_ts=START)
    await driver.prepare_all(activity)
    backend.fail("trigger", BackendTransientError("queue full"), ref=unit_ref(activity, 0, 1))

    with pytest.raises(BackendTransientError):
        await driver.run_stage(activity, 0)
    assert activity.step(0, 1).status == Status.WAITING

    backend.clear_failures()
    assert await reconciler.sync(activity)
    assert activity.step(0, 1).status == Status.BUILDING
    assert backend.calls_for("trigger") == [str(unit_ref(activity, 0, i)) for i in range(2)]


@pytest.mark.asyncio
async def test_untriggered_first_step_of_next_stage_is_retried(driver, reconciler, console, backend, stage, pipeline_of):
    pipeline = pipeline_of(stage("build", "compile"), stage("publish", "push"))
    activity = await driver.run_pipeline(pipeline)
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)
    backend.fail("trigger", BackendTransientError("queue full"))

    assert await reconciler.sync(activity)
    assert activity.stages[0].status == Status.SUCCESS
    assert activity.stages[1].status == Status.BUILDING
    assert activity.step(1, 0).status == Status.WAITING

    backend.clear_failures()
    assert await reconciler.sync(activity)
    assert activity.step(1, 0).status == Status.BUILDING
    assert backend.calls_for("trigger")[-1] == str(unit_ref(activity, 1, 0))


@pytest.mark.asyncio
async def test_inspect_errors_are_folded_into_no_change(
    driver, reconciler, console, backend, stage, pipeline_of
):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile")))
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)

    backend.fail("inspect", BackendTransientError("timeout"))
    assert not await reconciler.sync(activity)
    backend.fail("inspect", BackendStateError("garbage"))
    assert not await reconciler.sync(activity)
    assert activity.status == Status.BUILDING

    backend.clear_failures()
    assert await reconciler.sync(activity)
    assert activity.status == Status.SUCCESS


@pytest.mark.asyncio
async def test_terminal_activity_is_not_synced(driver, reconciler, console, backend, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile")))
    await driver.stop_activity(activity)
    backend.finish(activity, 0, UnitResult.SUCCESS, console("compile", result="SUCCESS"), start_ts=START)

    assert not await reconciler.sync(activity)
    assert activity.status == Status.ABORT


@pytest.mark.asyncio
async def test_step_log(driver, reconciler, console, backend, stage, pipeline_of):
    activity = await driver.run_pipeline(pipeline_of(stage("build", "compile", "test")))
    backend.start(activity, 0, console("compile", "test"), start_ts=START)

    log = await reconciler.step_log(activity, 0, 1)

    assert log == "00h00m02s100ms  + echo test\n00h00m02s900ms  test\n"
    assert await reconciler.step_log(activity, 0, 1, previous_log="00h00m02s100ms  + echo test\n") == (
        "00h00m02s900ms  test\n"
    )
    assert await reconciler.step_log(activity, 0, 0) == "00h00m01s100ms  + echo compile\n00h00m01s900ms  compile"


@pytest.mark.asyncio
async def test_stage_unit_with_skipped_first_step(
    scoped_driver, scoped_reconciler, scoped_backend, console, stage, pipeline_of
):
    pipeline = pipeline_of(
        stage("build", Step(name="lint", conditions=Conditions(all=["LINT=yes"])), "compile")
    )
    activity = await scoped_driver.run_pipeline(pipeline)
    assert activity.step(0, 0).status == Status.SKIP

    # the unit only holds compile, so its output has one shell invocation
    scoped_backend.finish(
        activity, 0, UnitResult.FAILURE, console("compile", result="FAILURE"), start_ts=START
    )
    await scoped_reconciler.sync(activity)

    assert activity.step(0, 0).status == Status.SKIP
    assert activity.step(0, 1).status == Status.FAIL
    assert activity.stages[0].status == Status.FAIL
    assert activity.status == Status.FAIL


@pytest.mark.asyncio
async def test_stage_unit_with_skipped_middle_step(
    scoped_driver, scoped_reconciler, scoped_backend, console, stage, pipeline_of
):
    pipeline = pipeline_of(
        stage(
            "build",
            "compile",
            Step(name="docs", conditions=Conditions(all=["DOCS=yes"])),
            "package",
        )
    )
    activity = await scoped_driver.run_pipeline(pipeline)
    assert activity.step(0, 1).status == Status.SKIP

    scoped_backend.finish(
        activity, 0, UnitResult.FAILURE, console("compile", "package", result="FAILURE"), start_ts=START
    )
    await scoped_reconciler.sync(activity)

    assert [s.status for s in activity.stages[0].steps] == [Status.SUCCESS, Status.SKIP, Status.FAIL]
    assert activity.stages[0].status == Status.FAIL
    assert await scoped_reconciler.step_log(activity, 0, 2) == (
        "00h00m02s100ms  + echo package\n00h00m02s900ms  package\n00h00m03s000ms  Finished: FAILURE\n"
    )
