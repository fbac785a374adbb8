import pytest
from pydantic import ValidationError

from phasegate import (
    PipelineDefinitionError,
    RunNotFound,
    RunOptions,
    RunState,
    WorkflowOrchestrator,
    WorkflowRun,
)
from phasegate.config import PhasegateConfig
from phasegate.persistence import EventType, InMemoryEventLog
from tests.fixtures.tasks import (
    DELIVERY_YAML,
    FAST,
    delivery_pipeline,
    delivery_registries,
)


def _orchestrator():
    executors, scorers, tasks = delivery_registries()
    orchestrator = WorkflowOrchestrator(
        executors,
        scorers,
        event_log=InMemoryEventLog(),
        config=PhasegateConfig(execution=FAST),
    )
    return orchestrator, tasks


@pytest.mark.asyncio
async def test_run_registered_pipeline_by_name():
    orchestrator, _ = _orchestrator()
    orchestrator.register_pipeline(delivery_pipeline())

    run = await orchestrator.run_to_completion("delivery", {"brief": "todo"})

    assert run.state == RunState.PASSED
    assert run.pipeline == "delivery"
    assert run.pipeline_fingerprint == delivery_pipeline().fingerprint()
    assert run.terminated_at is not None


@pytest.mark.asyncio
async def test_run_pipeline_from_yaml_path(tmp_path):
    path = tmp_path / "delivery.yaml"
    path.write_text(DELIVERY_YAML)
    orchestrator, _ = _orchestrator()

    run_id = await orchestrator.run_workflow(str(path), {"brief": "todo"})
    status = await orchestrator.get_status(run_id)
    run = await orchestrator.wait(run_id)

    assert status.pipeline == "delivery"
    assert run.state == RunState.PASSED


@pytest.mark.asyncio
async def test_run_started_is_recorded_before_run_workflow_returns():
    orchestrator, _ = _orchestrator()

    run_id = await orchestrator.run_workflow(
        delivery_pipeline(), {"brief": "todo"}, RunOptions(quality_threshold=90)
    )
    started = await orchestrator.event_log.list_events(run_id, EventType.RUN_STARTED)
    await orchestrator.wait(run_id)

    assert len(started) == 1
    assert started[0].payload["options"]["quality_threshold"] == 90
    assert [s["kind"] for s in started[0].payload["seeds"]] == ["brief"]


@pytest.mark.asyncio
async def test_unknown_references():
    orchestrator, _ = _orchestrator()

    with pytest.raises(PipelineDefinitionError):
        await orchestrator.run_workflow("nope")
    with pytest.raises(RunNotFound):
        await orchestrator.wait("missing")
    with pytest.raises(RunNotFound):
        await orchestrator.get_status("missing")
    assert await orchestrator.cancel("missing") is False


@pytest.mark.asyncio
async def test_every_run_ends_in_a_terminal_state():
    orchestrator, _ = _orchestrator()
    options = [
        RunOptions(),
        RunOptions(quality_threshold=100),
        RunOptions(skip_steps=["analyze"]),
    ]

    for run_options in options:
        run = await orchestrator.run_to_completion(
            delivery_pipeline(), {"brief": "todo"}, run_options
        )
        terminated = await orchestrator.event_log.list_events(
            run.run_id, EventType.RUN_TERMINATED
        )
        assert run.state.is_terminal
        assert len(terminated) == 1
        assert terminated[0].payload["state"] == run.state.value


def test_contract_validation():
    with pytest.raises(ValidationError):
        RunOptions(quality_threshold=101)
    with pytest.raises(ValidationError):
        RunOptions(max_iterations_override=0)

    run = WorkflowRun(run_id="r", pipeline="p")
    assert run.state == RunState.PENDING
    with pytest.raises(ValueError):
        run.terminate(RunState.RUNNING)
    run.terminate(RunState.FAILED, "boom")
    assert run.reason == "boom"


@pytest.mark.asyncio
async def test_wait_collects_finished_run():
    orchestrator, _ = _orchestrator()

    run = await orchestrator.run_to_completion(delivery_pipeline(), {"brief": "todo"})

    with pytest.raises(RunNotFound):
        await orchestrator.wait(run.run_id)
    status = await orchestrator.get_status(run.run_id)
    assert status.state == RunState.PASSED
