"""Command line interface for pipewright."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer
import yaml
from pydantic import ValidationError

from .activity import Activity
from .config import load_config
from .errors import NotFoundError, PipewrightError
from .models import Pipeline
from .poller import SyncPoller
from .scheduler import CronScheduler
from .service import PipelineService, build_service

T = TypeVar("T")

app = typer.Typer(help="CLI for pipewright pipelines")

# Command groups
pipeline_app = typer.Typer(help="Commands for managing pipelines")
activity_app = typer.Typer(help="Commands for inspecting and steering activities")

app.add_typer(pipeline_app, name="pipeline")
app.add_typer(activity_app, name="activity")


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Enable debug logging")) -> None:
    """pipewright CLI entry point."""
    level = "DEBUG" if debug else load_config().log_level.upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def _run(operation: Callable[[PipelineService], Awaitable[T]]) -> T:
    """Run one service operation, turning domain errors into exit code 1."""

    async def runner() -> T:
        service = build_service()
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except NotFoundError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except PipewrightError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_activity(activity: Activity) -> None:
    typer.echo(
        f"Activity {activity.id}: {activity.status.value}"
        f" ({activity.pipeline.name} #{activity.run_sequence}, node {activity.node_name or '-'})"
    )
    if activity.commit_info:
        typer.echo(f"Commit: {activity.commit_info}")
    for stage in activity.stages:
        pending = " [awaiting approval]" if activity.pending_stage == stage.ordinal else ""
        typer.echo(f"- {stage.name}: {stage.status.value}{pending}")
        for step in stage.steps:
            timing = f" ({step.duration} ms)" if step.duration else ""
            typer.echo(f"    {step.ordinal}. {step.name}: {step.status.value}{timing}")


# ----------------------------------------------------------------------
# Pipelines
@pipeline_app.command("list")
def pipeline_list() -> None:
    """
    List all pipelines with their last run status.

    Example:
        pipewright pipeline list
        # Output: 3f2a...    build-and-test    Success    next: 0
    """
    pipelines = _run(lambda service: service.list_pipelines())
    if not pipelines:
        typer.echo("No pipelines found")
        return
    for pipeline in pipelines:
        typer.echo(
            f"{pipeline.id}\t{pipeline.name}\t{pipeline.last_run_status or '-'}"
            f"\tnext: {pipeline.next_run_time}"
        )


@pipeline_app.command("show")
def pipeline_show(pipeline_id: str) -> None:
    """Print a pipeline definition as JSON."""
    pipeline = _run(lambda service: service.get_pipeline(pipeline_id))
    typer.echo(pipeline.model_dump_json(indent=2))


@pipeline_app.command("import")
def pipeline_import(path: Path) -> None:
    """
    Create or update a pipeline from a YAML or JSON file.

    An existing pipeline with the same id keeps its webhook token and run
    counters.

    Example:
        pipewright pipeline import ./pipelines/build.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        data: Any = yaml.safe_load(path.read_text()) or {}
        pipeline = Pipeline.model_validate(data)
    except (yaml.YAMLError, ValidationError) as exc:
        typer.secho(f"Invalid pipeline file: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def save(service: PipelineService) -> Pipeline:
        if await service.store.find_pipeline(pipeline.id) is None:
            return await service.create_pipeline(pipeline)
        return await service.update_pipeline(pipeline)

    saved = _run(save)
    typer.echo(f"Imported pipeline {saved.name} ({saved.id})")


@pipeline_app.command("run")
def pipeline_run(pipeline_id: str) -> None:
    """Start a manual run and print the new activity id."""
    activity = _run(lambda service: service.run_pipeline(pipeline_id))
    typer.echo(f"Activity {activity.id} started: {activity.status.value}")


@pipeline_app.command("delete")
def pipeline_delete(pipeline_id: str) -> None:
    """Delete a pipeline definition. Its activities are kept."""
    pipeline = _run(lambda service: service.delete_pipeline(pipeline_id))
    typer.echo(f"Deleted pipeline {pipeline.name} ({pipeline.id})")


# ----------------------------------------------------------------------
# Activities
@activity_app.command("list")
def activity_list(
    pipeline_id: Optional[str] = typer.Option(None, "--pipeline", help="Only this pipeline's runs"),
) -> None:
    """List activities with their run sequence and status."""
    activities = _run(lambda service: service.list_activities(pipeline_id))
    if not activities:
        typer.echo("No activities found")
        return
    for activity in activities:
        typer.echo(
            f"{activity.id}\t{activity.pipeline.name}\t#{activity.run_sequence}\t{activity.status.value}"
        )


@activity_app.command("show")
def activity_show(activity_id: str) -> None:
    """Show the stage and step status tree of one activity."""
    _echo_activity(_run(lambda service: service.get_activity(activity_id)))


@activity_app.command("stop")
def activity_stop(activity_id: str) -> None:
    """Abort a running activity."""
    _echo_activity(_run(lambda service: service.stop_activity(activity_id)))


@activity_app.command("rerun")
def activity_rerun(activity_id: str) -> None:
    """Run a finished activity again from its first stage."""
    _echo_activity(_run(lambda service: service.rerun_activity(activity_id)))


@activity_app.command("approve")
def activity_approve(activity_id: str) -> None:
    """Resume an activity waiting at an approval gate."""
    _echo_activity(_run(lambda service: service.approve_activity(activity_id)))


@activity_app.command("sync")
def activity_sync(activity_id: str) -> None:
    """Reconcile one activity with the backend now."""

    async def sync(service: PipelineService) -> Activity:
        changed = await service.sync_activity(activity_id)
        typer.echo("changed" if changed else "unchanged")
        return await service.get_activity(activity_id)

    _echo_activity(_run(sync))


@activity_app.command("log")
def activity_log(
    activity_id: str,
    stage: int,
    step: int,
    previous: Optional[Path] = typer.Option(
        None, help="File holding the log already shown; only newer output is printed"
    ),
) -> None:
    """Print the output of one step."""
    previous_log = previous.read_text() if previous and previous.exists() else ""
    text = _run(lambda service: service.get_step_log(activity_id, stage, step, previous_log))
    typer.echo(text, nl=False)


# ----------------------------------------------------------------------
@app.command("serve")
def serve(lifespan: Optional[float] = None) -> None:
    """
    Run the sync poller and the cron scheduler.

    Runs indefinitely until stopped or lifespan expires.

    Example:
        pipewright serve
        pipewright serve --lifespan 300
    """
    config = load_config()

    async def loop(service: PipelineService) -> None:
        poller = SyncPoller(service, interval=config.sync_interval)
        scheduler = CronScheduler(service, interval=config.schedule_interval)
        await asyncio.gather(poller.run(lifespan=lifespan), scheduler.run(lifespan=lifespan))

    typer.echo("Starting pipewright poller and scheduler")
    _run(loop)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
