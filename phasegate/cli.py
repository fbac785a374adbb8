"""Command line interface for running phasegate pipelines."""

from __future__ import annotations

import asyncio
import importlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from pydantic import ValidationError

from phasegate import (
    PhasegateConfig,
    PhasegateError,
    RunNotFound,
    RunOptions,
    RunState,
    ScorerRegistry,
    TaskExecutorRegistry,
    WorkflowOrchestrator,
    get_event_log,
    load_config,
    load_pipeline,
)
from phasegate.progress import RunSnapshot

app = typer.Typer(help="CLI for phasegate quality-gated pipelines")


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a phasegate.yaml configuration file"
    ),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """phasegate CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    if log_level:
        config.log_level = log_level.upper()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = config


def _config(ctx: typer.Context) -> PhasegateConfig:
    return ctx.obj if isinstance(ctx.obj, PhasegateConfig) else load_config()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_inputs(values: List[str]) -> Dict[str, Any]:
    inputs: Dict[str, Any] = {}
    for item in values:
        kind, sep, raw = item.partition("=")
        if not sep or not kind:
            _fail(f"Invalid --input '{item}', expected kind=value")
        inputs[kind.strip()] = yaml.safe_load(raw) if raw else ""
    return inputs


def _load_registries(module_name: str) -> tuple[TaskExecutorRegistry, ScorerRegistry]:
    """Import ``module_name`` and let it populate fresh registries."""
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        _fail(f"Cannot import executors module '{module_name}': {exc}")
    register = getattr(module, "register", None)
    if not callable(register):
        _fail(f"Module '{module_name}' does not define register(executors, scorers)")
    executors, scorers = TaskExecutorRegistry(), ScorerRegistry()
    register(executors, scorers)
    return executors, scorers


def _print_snapshot(snapshot: RunSnapshot) -> None:
    typer.echo(f"Run {snapshot.run_id} ({snapshot.pipeline}): {snapshot.state.value}")
    if snapshot.reason:
        typer.echo(f"Reason: {snapshot.reason}")
    if snapshot.current_phase and not snapshot.state.is_terminal:
        step = f" / {snapshot.current_step}" if snapshot.current_step else ""
        typer.echo(f"Current: {snapshot.current_phase}{step}")
    for phase in snapshot.phases:
        typer.echo(f"- {phase.phase_id}: {phase.status.value} (iterations: {phase.iterations})")
        for result in phase.gate_results:
            verdict = "passed" if result.passed else "failed"
            typer.echo(
                f"    iteration {result.iteration}: {result.score:g}/{result.threshold:g} {verdict}"
            )
    typer.echo(f"Steps executed: {snapshot.steps_executed}")


@app.command("validate")
def validate(pipeline: Path) -> None:
    """
    Validate a pipeline definition file.

    Example:
        phasegate validate ./delivery.yaml
    """
    try:
        definition = load_pipeline(pipeline)
    except FileNotFoundError:
        _fail(f"Pipeline file not found: {pipeline}")
    except (ValidationError, yaml.YAMLError) as exc:
        _fail(f"Invalid pipeline {pipeline}:\n{exc}")
    typer.echo(f"Pipeline {definition.name} is valid")
    for phase in definition.phases:
        steps = ", ".join(phase.step_ids)
        typer.echo(f"  {phase.id}: {steps} (gate {phase.gate.scorer} >= {phase.gate.threshold:g})")


@app.command("run")
def run(
    ctx: typer.Context,
    pipeline: Path,
    executors: str = typer.Option(..., help="Module exposing register(executors, scorers)"),
    input: List[str] = typer.Option([], "--input", "-i", help="Initial input as kind=value"),
    threshold: Optional[float] = typer.Option(None, help="Override every gate threshold"),
    skip: List[str] = typer.Option([], "--skip", help="Step id to skip"),
    max_iterations: Optional[int] = typer.Option(None, help="Override every iteration budget"),
) -> None:
    """
    Run a pipeline to completion and print its final status.

    Exits with code 1 unless the run ends PASSED.

    Example:
        phasegate run ./delivery.yaml --executors my_tasks --input brief="Build a todo app"
        phasegate run ./delivery.yaml --executors my_tasks --threshold 80 --skip lint
    """
    config = _config(ctx)
    try:
        definition = load_pipeline(pipeline)
        options = RunOptions(
            quality_threshold=threshold,
            skip_steps=skip,
            max_iterations_override=max_iterations,
        )
    except FileNotFoundError:
        _fail(f"Pipeline file not found: {pipeline}")
    except (ValidationError, yaml.YAMLError) as exc:
        _fail(f"Invalid run request:\n{exc}")

    initial_input = _parse_inputs(input)
    task_registry, scorer_registry = _load_registries(executors)
    orchestrator = WorkflowOrchestrator(
        task_registry, scorer_registry, get_event_log(config=config), config
    )

    async def _run() -> RunSnapshot:
        run_id = await orchestrator.run_workflow(definition, initial_input, options)
        await orchestrator.wait(run_id)
        return await orchestrator.get_status(run_id)

    try:
        snapshot = asyncio.run(_run())
    except PhasegateError as exc:
        _fail(str(exc))
    _print_snapshot(snapshot)
    if snapshot.state != RunState.PASSED:
        raise typer.Exit(code=1)


@app.command("resume")
def resume(
    ctx: typer.Context,
    run_id: str,
    pipeline: Path = typer.Option(..., help="Pipeline file the run was started with"),
    executors: str = typer.Option(..., help="Module exposing register(executors, scorers)"),
) -> None:
    """Resume a run that stopped before reaching a terminal state."""
    config = _config(ctx)
    task_registry, scorer_registry = _load_registries(executors)
    orchestrator = WorkflowOrchestrator(
        task_registry, scorer_registry, get_event_log(config=config), config
    )

    async def _resume() -> RunSnapshot:
        await orchestrator.resume(run_id, load_pipeline(pipeline))
        await orchestrator.wait(run_id)
        return await orchestrator.get_status(run_id)

    try:
        snapshot = asyncio.run(_resume())
    except (PhasegateError, RunNotFound, ValueError, FileNotFoundError) as exc:
        _fail(str(exc))
    _print_snapshot(snapshot)
    if snapshot.state != RunState.PASSED:
        raise typer.Exit(code=1)


@app.command("status")
def status(ctx: typer.Context, run_id: str) -> None:
    """
    Show the status, gate history and iteration counts of a run.

    Example:
        phasegate status 0b8e...
    """
    orchestrator = WorkflowOrchestrator(
        TaskExecutorRegistry(), ScorerRegistry(), get_event_log(config=_config(ctx))
    )
    try:
        snapshot = asyncio.run(orchestrator.get_status(run_id))
    except RunNotFound:
        _fail("Run not found")
    _print_snapshot(snapshot)


@app.command("list")
def list_runs(ctx: typer.Context) -> None:
    """List recorded runs with their state."""
    event_log = get_event_log(config=_config(ctx))
    runs = asyncio.run(event_log.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for summary in runs:
        typer.echo(f"{summary.run_id}\t{summary.pipeline}\t{summary.state}")


@app.command("cancel")
def cancel(ctx: typer.Context, run_id: str) -> None:
    """Request cancellation of a running workflow."""
    orchestrator = WorkflowOrchestrator(
        TaskExecutorRegistry(), ScorerRegistry(), get_event_log(config=_config(ctx))
    )
    if not asyncio.run(orchestrator.cancel(run_id)):
        _fail(f"Run {run_id} is unknown or already finished")
    typer.echo(f"Cancellation requested for {run_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
