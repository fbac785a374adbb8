"""Progress tracking derived from the run event log."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import PhaseState, QualityGateResult, RunState
from .errors import RunNotFound
from .persistence import EventLog, EventType, WorkflowEvent

logger = logging.getLogger(__name__)


class PhaseProgress(BaseModel):
    phase_id: str
    status: PhaseState = PhaseState.PENDING
    iterations: int = 0
    gate_results: List[QualityGateResult] = Field(default_factory=list)
    feedback_count: int = 0


class RunSnapshot(BaseModel):
    """Read-only view of a run at the time it was taken."""

    run_id: str
    pipeline: Optional[str] = None
    state: RunState = RunState.RUNNING
    reason: Optional[str] = None
    current_phase: Optional[str] = None
    current_step: Optional[str] = None
    phases: List[PhaseProgress] = Field(default_factory=list)
    gate_results: List[QualityGateResult] = Field(default_factory=list)
    iteration_counts: Dict[str, int] = Field(default_factory=dict)
    steps_executed: int = 0
    feedback_count: int = 0
    cancel_requested: bool = False
    created_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0

    def phase(self, phase_id: str) -> PhaseProgress:
        for progress in self.phases:
            if progress.phase_id == phase_id:
                return progress
        raise KeyError(f"Phase '{phase_id}' not found in run {self.run_id}")


def build_snapshot(
    run_id: str,
    events: Sequence[WorkflowEvent],
    now: Optional[datetime] = None,
) -> RunSnapshot:
    """Fold the events of one run into a ``RunSnapshot``.

    Pure function of its inputs; ``now`` is only used for the elapsed time of
    runs that have not terminated yet.
    """
    snapshot = RunSnapshot(run_id=run_id)
    phases: Dict[str, PhaseProgress] = {}

    def progress_of(phase_id: str) -> PhaseProgress:
        if phase_id not in phases:
            phases[phase_id] = PhaseProgress(phase_id=phase_id)
        return phases[phase_id]

    for event in events:
        payload = event.payload
        etype = event.event_type

        if etype == EventType.RUN_STARTED:
            snapshot.pipeline = payload.get("pipeline")
            snapshot.created_at = event.created_at
            for phase_id in payload.get("phases", []):
                progress_of(phase_id)
            continue

        if etype == EventType.CANCEL_REQUESTED:
            snapshot.cancel_requested = True
            continue

        if etype == EventType.RUN_TERMINATED:
            snapshot.state = RunState(payload["state"])
            snapshot.reason = payload.get("reason")
            snapshot.terminated_at = event.created_at
            snapshot.current_step = None
            if event.phase_id and payload.get("phase_state"):
                progress_of(event.phase_id).status = PhaseState(payload["phase_state"])
            continue

        if event.phase_id is None:
            continue
        progress = progress_of(event.phase_id)
        if event.iteration is not None:
            progress.iterations = max(progress.iterations, event.iteration)

        if etype == EventType.STEP_STARTED:
            snapshot.steps_executed += 1
            snapshot.current_phase = event.phase_id
            snapshot.current_step = event.step_id
            progress.status = PhaseState.EXECUTING_STEPS
        elif etype in (EventType.STEP_COMPLETED, EventType.STEP_FAILED):
            if snapshot.current_step == event.step_id:
                snapshot.current_step = None
        elif etype == EventType.GATE_STARTED:
            snapshot.current_phase = event.phase_id
            progress.status = PhaseState.GATE_EVALUATING
        elif etype == EventType.GATE_EVALUATED:
            result = QualityGateResult.model_validate(payload["result"])
            progress.gate_results.append(result)
            snapshot.gate_results.append(result)
            progress.status = PhaseState.GATE_PASSED if result.passed else PhaseState.GATE_FAILED
        elif etype == EventType.FEEDBACK_ISSUED:
            progress.feedback_count += 1
            snapshot.feedback_count += 1
            progress.status = PhaseState.FEEDBACK_LOOP
        elif etype == EventType.PHASE_ADVANCED:
            progress.status = PhaseState.GATE_PASSED
            snapshot.current_phase = payload.get("next_phase_id")

    snapshot.phases = list(phases.values())
    snapshot.iteration_counts = {
        p.phase_id: p.iterations for p in snapshot.phases if p.iterations
    }
    if snapshot.created_at is not None:
        end = snapshot.terminated_at or now or datetime.now(timezone.utc)
        snapshot.elapsed_seconds = max(0.0, (end - snapshot.created_at).total_seconds())
    return snapshot


class ProgressTracker:
    """Answers status queries for runs recorded in an event log."""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    async def snapshot(self, run_id: str) -> RunSnapshot:
        events = await self._log.list_events(run_id)
        if not any(e.event_type == EventType.RUN_STARTED for e in events):
            raise RunNotFound(f"No events recorded for run {run_id}")
        logger.debug(f"Building snapshot from {len(events)} events run_id={run_id}")
        return build_snapshot(run_id, events)
