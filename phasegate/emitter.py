"""Run event emission service."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from .contracts import (
    Artifact,
    ExecutionMetadata,
    FeedbackRecord,
    QualityGateResult,
    RunOptions,
    RunState,
)
from .persistence import EventLog, EventType, WorkflowEvent


class RunEventEmitter:
    """Emits the events of one run to an event log.

    Provides convenience methods for the transitions the sequencer and the
    gate evaluator record, so payload layouts live in one place.
    """

    def __init__(self, event_log: EventLog, run_id: str) -> None:
        self._log = event_log
        self._run_id = run_id

    @property
    def run_id(self) -> str:
        return self._run_id

    async def _emit(
        self,
        event_type: EventType,
        payload: Optional[dict[str, Any]] = None,
        phase_id: Optional[str] = None,
        step_id: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> WorkflowEvent:
        return await self._log.append(
            WorkflowEvent(
                run_id=self._run_id,
                event_type=event_type,
                phase_id=phase_id,
                step_id=step_id,
                iteration=iteration,
                payload=payload or {},
            )
        )

    async def run_started(
        self,
        pipeline: str,
        fingerprint: str,
        phases: list[str],
        seeds: Iterable[Artifact],
        options: RunOptions,
    ) -> None:
        await self._emit(
            EventType.RUN_STARTED,
            {
                "pipeline": pipeline,
                "fingerprint": fingerprint,
                "phases": phases,
                "seeds": [a.model_dump(mode="json") for a in seeds],
                "options": options.model_dump(mode="json"),
            },
        )

    async def step_started(
        self, phase_id: str, step_id: str, iteration: int, attempt: int
    ) -> None:
        await self._emit(
            EventType.STEP_STARTED,
            {"attempt": attempt},
            phase_id=phase_id,
            step_id=step_id,
            iteration=iteration,
        )

    async def step_completed(
        self,
        phase_id: str,
        step_id: str,
        iteration: int,
        artifacts: Iterable[Artifact],
        metadata: ExecutionMetadata,
    ) -> None:
        await self._emit(
            EventType.STEP_COMPLETED,
            {
                "artifacts": [a.model_dump(mode="json") for a in artifacts],
                "metadata": metadata.model_dump(mode="json"),
            },
            phase_id=phase_id,
            step_id=step_id,
            iteration=iteration,
        )

    async def step_failed(
        self,
        phase_id: str,
        step_id: str,
        iteration: int,
        attempt: int,
        reason: str,
        retryable: bool,
    ) -> None:
        await self._emit(
            EventType.STEP_FAILED,
            {"attempt": attempt, "reason": reason[:500], "retryable": retryable},
            phase_id=phase_id,
            step_id=step_id,
            iteration=iteration,
        )

    async def gate_started(self, phase_id: str, iteration: int) -> None:
        await self._emit(EventType.GATE_STARTED, phase_id=phase_id, iteration=iteration)

    async def gate_evaluated(self, result: QualityGateResult) -> None:
        await self._emit(
            EventType.GATE_EVALUATED,
            {"result": result.model_dump(mode="json")},
            phase_id=result.phase_id,
            iteration=result.iteration,
        )

    async def feedback_issued(self, feedback: FeedbackRecord) -> None:
        await self._emit(
            EventType.FEEDBACK_ISSUED,
            {"feedback": feedback.model_dump(mode="json")},
            phase_id=feedback.gate_result.phase_id,
            step_id=feedback.retry_target_step_id,
            iteration=feedback.iteration,
        )

    async def phase_advanced(
        self, phase_id: str, iteration: int, next_phase_id: Optional[str]
    ) -> None:
        await self._emit(
            EventType.PHASE_ADVANCED,
            {"next_phase_id": next_phase_id},
            phase_id=phase_id,
            iteration=iteration,
        )

    async def cancel_requested(self) -> None:
        await self._emit(EventType.CANCEL_REQUESTED)

    async def run_terminated(
        self,
        state: RunState,
        reason: Optional[str],
        phase_id: Optional[str] = None,
        phase_state: Optional[str] = None,
    ) -> None:
        await self._emit(
            EventType.RUN_TERMINATED,
            {"state": state.value, "reason": reason, "phase_state": phase_state},
            phase_id=phase_id,
        )
