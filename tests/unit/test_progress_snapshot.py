from datetime import datetime, timedelta, timezone

import pytest

from phasegate.contracts import PhaseState, QualityGateResult, RunState
from phasegate.errors import RunNotFound
from phasegate.persistence import EventType, InMemoryEventLog, WorkflowEvent
from phasegate.progress import ProgressTracker, build_snapshot

START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _event(event_type, seconds=0, **kwargs):
    return WorkflowEvent(
        run_id="run",
        event_type=event_type,
        created_at=START + timedelta(seconds=seconds),
        **kwargs,
    )


def _gate(iteration, score, passed):
    result = QualityGateResult(
        phase_id="design", iteration=iteration, score=score, threshold=95, passed=passed
    )
    return _event(
        EventType.GATE_EVALUATED,
        phase_id="design",
        iteration=iteration,
        payload={"result": result.model_dump(mode="json")},
    )


EVENTS = [
    _event(EventType.RUN_STARTED, payload={"pipeline": "delivery", "phases": ["design", "build"]}),
    _event(EventType.STEP_STARTED, 1, phase_id="design", step_id="analyze", iteration=1),
    _event(EventType.STEP_COMPLETED, 2, phase_id="design", step_id="analyze", iteration=1),
    _event(EventType.GATE_STARTED, 3, phase_id="design", iteration=1),
    _gate(1, 80, False),
    _event(EventType.FEEDBACK_ISSUED, 4, phase_id="design", step_id="analyze", iteration=2),
    _event(EventType.STEP_STARTED, 5, phase_id="design", step_id="analyze", iteration=2),
]


def test_snapshot_of_running_run():
    snapshot = build_snapshot("run", EVENTS, now=START + timedelta(seconds=30))

    assert snapshot.pipeline == "delivery"
    assert snapshot.state == RunState.RUNNING
    assert snapshot.current_phase == "design"
    assert snapshot.current_step == "analyze"
    assert snapshot.steps_executed == 2
    assert snapshot.feedback_count == 1
    assert snapshot.iteration_counts == {"design": 2}
    assert [r.score for r in snapshot.gate_results] == [80]
    assert snapshot.phase("design").status == PhaseState.EXECUTING_STEPS
    assert snapshot.phase("build").status == PhaseState.PENDING
    assert snapshot.elapsed_seconds == 30
    assert not snapshot.cancel_requested


def test_snapshot_of_finished_run():
    events = EVENTS + [
        _event(EventType.STEP_COMPLETED, 6, phase_id="design", step_id="analyze", iteration=2),
        _gate(2, 97, True),
        _event(
            EventType.PHASE_ADVANCED,
            7,
            phase_id="design",
            iteration=2,
            payload={"next_phase_id": "build"},
        ),
        _event(EventType.CANCEL_REQUESTED, 8),
        _event(
            EventType.RUN_TERMINATED,
            10,
            phase_id="build",
            payload={"state": "CANCELLED", "reason": "cancelled", "phase_state": "CANCELLED"},
        ),
    ]

    snapshot = build_snapshot("run", events)

    assert snapshot.state == RunState.CANCELLED
    assert snapshot.reason == "cancelled"
    assert snapshot.cancel_requested
    assert snapshot.current_step is None
    assert snapshot.phase("design").status == PhaseState.GATE_PASSED
    assert snapshot.phase("build").status == PhaseState.CANCELLED
    assert [r.passed for r in snapshot.phase("design").gate_results] == [False, True]
    assert snapshot.elapsed_seconds == 10
    with pytest.raises(KeyError):
        snapshot.phase("deploy")


@pytest.mark.asyncio
async def test_tracker_reads_event_log():
    log = InMemoryEventLog()
    for event in EVENTS:
        await log.append(event)
    tracker = ProgressTracker(log)

    snapshot = await tracker.snapshot("run")

    assert snapshot.run_id == "run"
    assert snapshot.steps_executed == 2
    with pytest.raises(RunNotFound):
        await tracker.snapshot("other")
