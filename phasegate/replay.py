"""Rebuild run state from its event log, the basis for resume after a crash."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, Field

from .artifacts import ArtifactStore
from .contracts import (
    Artifact,
    FeedbackRecord,
    PhaseState,
    QualityGateResult,
    RunOptions,
    RunState,
    WorkflowRun,
)
from .errors import RunNotFound
from .persistence import EventType, WorkflowEvent

logger = logging.getLogger(__name__)


class ResumeCursor(BaseModel):
    """Where an interrupted run picks up again."""

    phase_index: int = 0
    iteration: int = 1
    feedback: Optional[FeedbackRecord] = None
    completed_steps: List[str] = Field(default_factory=list)
    # Gate already evaluated for ``iteration`` but its decision was not recorded.
    gate_result: Optional[QualityGateResult] = None


class RunReplay:
    """Fold of one run's events into an artifact store and a resume cursor."""

    def __init__(self, run: WorkflowRun) -> None:
        self.run = run
        self.store = ArtifactStore(run.run_id)
        self.options = RunOptions()
        self.phase_ids: List[str] = []
        self.phase_states: Dict[str, PhaseState] = {}
        self.gate_results: List[QualityGateResult] = []
        self.feedback_records: List[FeedbackRecord] = []
        self.cursor = ResumeCursor()

    @classmethod
    def from_events(cls, run_id: str, events: Sequence[WorkflowEvent]) -> "RunReplay":
        started = next((e for e in events if e.event_type == EventType.RUN_STARTED), None)
        if started is None:
            raise RunNotFound(f"No events recorded for run {run_id}")

        replay = cls(
            WorkflowRun(
                run_id=run_id,
                pipeline=started.payload.get("pipeline", ""),
                pipeline_fingerprint=started.payload.get("fingerprint", ""),
                state=RunState.RUNNING,
                created_at=started.created_at,
            )
        )
        replay._fold(events)
        return replay

    def _fold(self, events: Sequence[WorkflowEvent]) -> None:
        completed: Dict[Tuple[str, int], Set[str]] = defaultdict(set)
        last_gate: Dict[str, QualityGateResult] = {}
        last_feedback: Dict[str, FeedbackRecord] = {}
        advanced = 0

        for event in events:
            payload = event.payload
            if event.event_type == EventType.RUN_STARTED:
                self.phase_ids = list(payload.get("phases", []))
                self.phase_states = {p: PhaseState.PENDING for p in self.phase_ids}
                self.options = RunOptions.model_validate(payload.get("options") or {})
                for seed in payload.get("seeds", []):
                    self.store.put(Artifact.model_validate(seed))
            elif event.event_type == EventType.STEP_STARTED:
                self.phase_states[event.phase_id] = PhaseState.EXECUTING_STEPS
            elif event.event_type == EventType.STEP_COMPLETED:
                for data in payload.get("artifacts", []):
                    self.store.put(Artifact.model_validate(data))
                completed[(event.phase_id, event.iteration)].add(event.step_id)
            elif event.event_type == EventType.GATE_EVALUATED:
                result = QualityGateResult.model_validate(payload["result"])
                self.gate_results.append(result)
                last_gate[result.phase_id] = result
                self.phase_states[result.phase_id] = (
                    PhaseState.GATE_PASSED if result.passed else PhaseState.GATE_FAILED
                )
            elif event.event_type == EventType.FEEDBACK_ISSUED:
                feedback = FeedbackRecord.model_validate(payload["feedback"])
                self.feedback_records.append(feedback)
                last_feedback[feedback.gate_result.phase_id] = feedback
                self.phase_states[feedback.gate_result.phase_id] = PhaseState.FEEDBACK_LOOP
            elif event.event_type == EventType.PHASE_ADVANCED:
                advanced = self.phase_ids.index(event.phase_id) + 1
                self.phase_states[event.phase_id] = PhaseState.GATE_PASSED
            elif event.event_type == EventType.RUN_TERMINATED:
                self.run.state = RunState(payload["state"])
                self.run.reason = payload.get("reason")
                self.run.terminated_at = event.created_at
                if event.phase_id and payload.get("phase_state"):
                    self.phase_states[event.phase_id] = PhaseState(payload["phase_state"])

        self.run.phase_index = advanced
        self.cursor = self._cursor(advanced, completed, last_gate, last_feedback)

    def _cursor(
        self,
        phase_index: int,
        completed: Dict[Tuple[str, int], Set[str]],
        last_gate: Dict[str, QualityGateResult],
        last_feedback: Dict[str, FeedbackRecord],
    ) -> ResumeCursor:
        if phase_index >= len(self.phase_ids):
            return ResumeCursor(phase_index=phase_index)
        phase_id = self.phase_ids[phase_index]
        gate = last_gate.get(phase_id)
        feedback = last_feedback.get(phase_id)

        if gate is not None and (feedback is None or feedback.iteration <= gate.iteration):
            return ResumeCursor(
                phase_index=phase_index, iteration=gate.iteration, gate_result=gate
            )
        if feedback is not None:
            return ResumeCursor(
                phase_index=phase_index,
                iteration=feedback.iteration,
                feedback=feedback,
                completed_steps=sorted(completed[(phase_id, feedback.iteration)]),
            )
        return ResumeCursor(
            phase_index=phase_index,
            iteration=1,
            completed_steps=sorted(completed[(phase_id, 1)]),
        )
