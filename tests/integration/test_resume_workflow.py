"""Resuming interrupted runs from a persisted event log."""

import pytest

from phasegate import PipelineDefinitionError, RunNotFound, RunState, WorkflowOrchestrator
from phasegate.config import PhasegateConfig
from phasegate.persistence import EventType, InMemoryEventLog, SQLiteEventLog
from tests.fixtures.tasks import (
    FAST,
    delivery_pipeline,
    delivery_registries,
    executed_steps,
)


def _orchestrator(executors, scorers, event_log):
    return WorkflowOrchestrator(
        executors, scorers, event_log=event_log, config=PhasegateConfig(execution=FAST)
    )


async def _crashed_copy(source, run_id, target, stop):
    """Copy the events of ``run_id`` up to and including the first one matching ``stop``."""
    for event in await source.list_events(run_id):
        await target.append(event.model_copy(update={"sequence": None}))
        if stop(event):
            return
    raise AssertionError("stop event not found")


async def _completed_run(design_scores=(96,)):
    executors, scorers, _ = delivery_registries(design_scores=design_scores)
    log = InMemoryEventLog()
    orchestrator = _orchestrator(executors, scorers, log)
    run = await orchestrator.run_to_completion(delivery_pipeline(), {"brief": "todo"})
    assert run.state == RunState.PASSED
    return log, run.run_id


@pytest.mark.asyncio
async def test_resume_after_crash_mid_phase(tmp_path):
    source, run_id = await _completed_run()
    log = SQLiteEventLog(tmp_path / "runs.db")
    await _crashed_copy(
        source,
        run_id,
        log,
        lambda e: e.event_type == EventType.STEP_COMPLETED and e.step_id == "analyze",
    )

    executors, scorers, tasks = delivery_registries()
    orchestrator = _orchestrator(executors, scorers, log)
    assert await orchestrator.resume(run_id, delivery_pipeline()) == run_id
    run = await orchestrator.wait(run_id)
    status = await orchestrator.get_status(run_id)

    assert run.state == RunState.PASSED
    assert executed_steps(tasks) == ["architect", "implement", "lint"]
    architect = tasks["design-architecture"].calls[0]
    assert architect.input_of_kind("requirements").content == "requirements v1"
    assert [r.phase_id for r in status.gate_results] == ["design", "build"]
    log.close()


@pytest.mark.asyncio
async def test_resume_applies_pending_gate_decision():
    source, run_id = await _completed_run(design_scores=[70, 99])
    log = InMemoryEventLog()
    await _crashed_copy(
        source, run_id, log, lambda e: e.event_type == EventType.GATE_EVALUATED
    )

    executors, scorers, tasks = delivery_registries(design_scores=[99])
    orchestrator = _orchestrator(executors, scorers, log)
    orchestrator.register_pipeline(delivery_pipeline())
    await orchestrator.resume(run_id)
    run = await orchestrator.wait(run_id)
    status = await orchestrator.get_status(run_id)

    assert run.state == RunState.PASSED
    # The recorded failing gate is not re-scored; its feedback loop continues.
    assert executed_steps(tasks) == ["analyze", "architect", "implement", "lint"]
    assert [r.score for r in status.gate_results] == [70, 99, 92]
    assert status.iteration_counts["design"] == 2
    assert status.feedback_count == 1


@pytest.mark.asyncio
async def test_resume_rejects_changed_pipeline():
    source, run_id = await _completed_run()
    log = InMemoryEventLog()
    await _crashed_copy(source, run_id, log, lambda e: e.event_type == EventType.STEP_STARTED)

    executors, scorers, _ = delivery_registries()
    orchestrator = _orchestrator(executors, scorers, log)
    changed = delivery_pipeline().model_copy(update={"version": "2"})

    with pytest.raises(PipelineDefinitionError):
        await orchestrator.resume(run_id, changed)


@pytest.mark.asyncio
async def test_resume_rejects_terminal_and_unknown_runs():
    source, run_id = await _completed_run()
    executors, scorers, _ = delivery_registries()
    orchestrator = _orchestrator(executors, scorers, source)

    with pytest.raises(ValueError):
        await orchestrator.resume(run_id, delivery_pipeline())
    with pytest.raises(RunNotFound):
        await orchestrator.resume("missing", delivery_pipeline())


@pytest.mark.asyncio
async def test_events_survive_in_sqlite(tmp_path):
    executors, scorers, _ = delivery_registries()
    db_path = tmp_path / "runs.db"
    log = SQLiteEventLog(db_path)
    orchestrator = _orchestrator(executors, scorers, log)
    run = await orchestrator.run_to_completion(delivery_pipeline(), {"brief": "todo"})
    log.close()

    reopened = SQLiteEventLog(db_path)
    status = await _orchestrator(executors, scorers, reopened).get_status(run.run_id)
    runs = await reopened.list_runs()

    assert status.state == run.state
    assert [r.run_id for r in runs] == [run.run_id]
    assert runs[0].state == run.state.value
    reopened.close()
