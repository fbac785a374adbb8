"""Phase sequencer: the control loop of one workflow run."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from .artifacts import ArtifactStore
from .config import ExecutionConfig
from .constants import INPUT_STEP_ID
from .contracts import (
    Artifact,
    Escalation,
    FeedbackRecord,
    PhaseState,
    QualityGateResult,
    RunOptions,
    RunState,
    TaskRequest,
    TaskResult,
    WorkflowRun,
)
from .emitter import RunEventEmitter
from .errors import (
    ArtifactDependencyMissing,
    ExecutorFailure,
    MaxIterationsExceeded,
    PipelineDefinitionError,
    WorkflowCancelled,
)
from .feedback import FeedbackLoopController, steps_to_rerun
from .gates import QualityGateEvaluator
from .persistence import EventLog, EventType
from .pipeline import (
    PhaseDefinition,
    PipelineDefinition,
    StepDefinition,
    active_steps,
    check_dependencies,
    effective_gate,
)
from .registry import ScorerRegistry, TaskExecutorRegistry
from .replay import ResumeCursor, RunReplay
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class PhaseSequencer:
    """Drives the phases of one ``WorkflowRun`` in declaration order.

    Steps run one at a time; the sequencer suspends on every executor call and
    gate evaluation. Transient executor failures are retried locally, quality
    failures go through the feedback loop, anything else terminates the run.
    Cancellation is cooperative: an in-flight step is allowed to return.
    """

    def __init__(
        self,
        run: WorkflowRun,
        pipeline: PipelineDefinition,
        executors: TaskExecutorRegistry,
        scorers: ScorerRegistry,
        event_log: EventLog,
        config: Optional[ExecutionConfig] = None,
        options: Optional[RunOptions] = None,
        store: Optional[ArtifactStore] = None,
    ) -> None:
        self.run = run
        self._pipeline = pipeline
        self._executors = executors
        self._log = event_log
        self._config = config or ExecutionConfig()
        self._options = options or RunOptions()
        self.store = store or ArtifactStore(run.run_id)
        self._emitter = RunEventEmitter(event_log, run.run_id)
        self._evaluator = QualityGateEvaluator(
            scorers, self._emitter, self._config.scorer_timeout_seconds
        )
        self._feedback = FeedbackLoopController()
        self._cancel_requested = False
        self.phase_states: Dict[str, PhaseState] = {
            p.id: PhaseState.PENDING for p in pipeline.phases
        }
        self.gate_results: List[QualityGateResult] = []
        self.feedback_records: List[FeedbackRecord] = []
        self.steps_executed = 0

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def request_cancel(self) -> None:
        """Ask the run to stop once the in-flight invocation returns."""
        self._cancel_requested = True
        logger.info(f"Cancellation requested for run_id={self.run_id}")

    # ------------------------------------------------------------------
    # Entry points
    async def execute(self, initial_input: Optional[Mapping[str, Any]] = None) -> WorkflowRun:
        """Start the run and drive it to a terminal state."""
        await self.start(initial_input)
        return await self.drive()

    async def start(self, initial_input: Optional[Mapping[str, Any]] = None) -> None:
        """Store the initial input and record the start of the run."""
        seeds = [Artifact.seed(kind, content) for kind, content in (initial_input or {}).items()]
        for seed in seeds:
            self.store.put(seed)
        self.run.state = RunState.RUNNING
        await self._emitter.run_started(
            pipeline=self._pipeline.name,
            fingerprint=self.run.pipeline_fingerprint or self._pipeline.fingerprint(),
            phases=[p.id for p in self._pipeline.phases],
            seeds=seeds,
            options=self._options,
        )
        logger.info(f"Started pipeline {self._pipeline.name} for run_id={self.run_id}")

    async def resume(self, replay: RunReplay) -> WorkflowRun:
        """Continue an interrupted run from its replayed state."""
        self.store = replay.store
        self.gate_results = list(replay.gate_results)
        self.feedback_records = list(replay.feedback_records)
        self.phase_states.update(replay.phase_states)
        self.run.state = RunState.RUNNING
        logger.info(
            f"Resuming pipeline {self._pipeline.name} at phase index "
            f"{replay.cursor.phase_index} iteration {replay.cursor.iteration} "
            f"for run_id={self.run_id}"
        )
        return await self.drive(replay.cursor)

    async def drive(self, cursor: Optional[ResumeCursor] = None) -> WorkflowRun:
        """Run phases from ``cursor`` (or the beginning) until a terminal state."""
        cursor = cursor or ResumeCursor()
        phases = self._pipeline.phases
        phase_id: Optional[str] = None
        try:
            self._validate()
            for index in range(cursor.phase_index, len(phases)):
                phase = phases[index]
                phase_id = phase.id
                self.run.phase_index = index
                result = await self._run_phase(
                    phase, cursor if index == cursor.phase_index else None
                )
                next_phase = phases[index + 1].id if index + 1 < len(phases) else None
                await self._emitter.phase_advanced(phase.id, result.iteration, next_phase)
                logger.info(
                    f"Phase {phase.id} passed at iteration {result.iteration} "
                    f"for run_id={self.run_id}"
                )
            await self._terminate(RunState.PASSED, None)
        except WorkflowCancelled as e:
            await self._terminate(RunState.CANCELLED, str(e), phase_id, PhaseState.CANCELLED)
        except MaxIterationsExceeded as e:
            await self._terminate(RunState.FAILED, str(e), phase_id, PhaseState.ESCALATED)
        except (ExecutorFailure, ArtifactDependencyMissing, PipelineDefinitionError) as e:
            await self._terminate(RunState.FAILED, str(e), phase_id, PhaseState.FAILED)
        except asyncio.CancelledError:
            await self._terminate(
                RunState.CANCELLED, "Run task was cancelled", phase_id, PhaseState.CANCELLED
            )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while driving run_id={self.run_id}")
            await self._terminate(
                RunState.FAILED,
                f"Unexpected error: {type(e).__name__}: {e}",
                phase_id,
                PhaseState.FAILED,
            )
            raise
        return self.run

    # ------------------------------------------------------------------
    # Phase and step execution
    def _validate(self) -> None:
        seed_kinds = {a.kind for a in self.store if a.step_id == INPUT_STEP_ID}
        check_dependencies(self._pipeline, seed_kinds, self._options.skip_steps)
        skipped = set(self._options.skip_steps)
        unknown = sorted(
            {s.task for s in self._pipeline.all_steps() if s.id not in skipped}
            - set(self._executors.names())
        )
        if unknown:
            raise PipelineDefinitionError(
                f"No task executor registered for: {', '.join(unknown)}"
            )

    async def _run_phase(
        self, phase: PhaseDefinition, cursor: Optional[ResumeCursor]
    ) -> QualityGateResult:
        gate = effective_gate(phase.gate, self._options)
        active = active_steps(phase, self._options.skip_steps)
        iteration = 1
        feedback: Optional[FeedbackRecord] = None
        steps = active
        completed: set[str] = set()
        pending: Optional[QualityGateResult] = None

        if cursor is not None:
            iteration = cursor.iteration
            feedback = cursor.feedback
            completed = set(cursor.completed_steps)
            pending = cursor.gate_result
            if feedback is not None:
                steps = steps_to_rerun(
                    phase, feedback.retry_target_step_id, active, self._config.retry_scope
                )

        while True:
            if pending is None:
                self.phase_states[phase.id] = PhaseState.EXECUTING_STEPS
                for step in steps:
                    if step.id in completed:
                        continue
                    await self._check_cancelled()
                    await self._run_step(phase, step, iteration, feedback)
                completed = set()

                await self._check_cancelled()
                self.phase_states[phase.id] = PhaseState.GATE_EVALUATING
                await self._emitter.gate_started(phase.id, iteration)
                result = await self._evaluator.evaluate(
                    phase.id, iteration, self.store.current_view(phase.id), gate
                )
                self.gate_results.append(result)
            else:
                result, pending = pending, None

            if result.passed:
                self.phase_states[phase.id] = PhaseState.GATE_PASSED
                return result

            self.phase_states[phase.id] = PhaseState.GATE_FAILED
            decision = self._feedback.on_gate_failure(
                result,
                phase,
                max_iterations=gate.max_iterations,
                active_steps=active,
                gate_threshold=gate.threshold,
            )
            if isinstance(decision, Escalation):
                raise MaxIterationsExceeded(decision)

            self.phase_states[phase.id] = PhaseState.FEEDBACK_LOOP
            self.feedback_records.append(decision)
            await self._emitter.feedback_issued(decision)
            logger.warning(
                f"Phase {phase.id} scored {result.score:g} < {result.threshold:g}; "
                f"{decision.summary()} (run_id={self.run_id})"
            )
            feedback = decision
            iteration = decision.iteration
            steps = steps_to_rerun(
                phase, decision.retry_target_step_id, active, self._config.retry_scope
            )
            await self._check_cancelled()

    async def _run_step(
        self,
        phase: PhaseDefinition,
        step: StepDefinition,
        iteration: int,
        feedback: Optional[FeedbackRecord],
    ) -> List[Artifact]:
        self.run.step_index = phase.step_index(step.id)
        inputs = [self.store.latest(kind) for kind in step.requires]
        attempts = self._config.transient_retries + 1

        for attempt in range(1, attempts + 1):
            await self._emitter.step_started(phase.id, step.id, iteration, attempt)
            self.steps_executed += 1
            request = TaskRequest(
                run_id=self.run_id,
                task_name=step.task,
                step_id=step.id,
                phase_id=phase.id,
                iteration=iteration,
                inputs=inputs,
                feedback=feedback,
                deadline_seconds=self._config.step_deadline_seconds,
            )
            try:
                result = await self._executors.invoke(request)
                artifacts = self._stamp(phase, step, iteration, inputs, result)
            except ExecutorFailure as e:
                await self._emitter.step_failed(
                    phase.id, step.id, iteration, attempt, e.reason, e.retryable
                )
                if e.retryable and attempt < attempts:
                    logger.warning(
                        f"Step {step.id} failed transiently (attempt {attempt}/{attempts}): "
                        f"{e.reason} run_id={self.run_id}"
                    )
                    await self._check_cancelled()
                    await schedule_retry(
                        attempt,
                        base=self._config.retry_backoff_base,
                        jitter=self._config.retry_backoff_jitter,
                    )
                    continue
                logger.error(f"Step {step.id} failed: {e.reason} run_id={self.run_id}")
                raise ExecutorFailure(
                    f"Step '{step.id}' failed after {attempt} attempt(s): {e.reason}",
                    retryable=False,
                ) from e

            for artifact in artifacts:
                self.store.put(artifact)
            await self._emitter.step_completed(
                phase.id, step.id, iteration, artifacts, result.metadata
            )
            logger.info(
                f"Step {step.id} completed (iteration {iteration}) in "
                f"{result.metadata.duration_ms:.0f}ms run_id={self.run_id}"
            )
            return artifacts

        raise AssertionError("unreachable")

    @staticmethod
    def _stamp(
        phase: PhaseDefinition,
        step: StepDefinition,
        iteration: int,
        inputs: List[Artifact],
        result: TaskResult,
    ) -> List[Artifact]:
        produced = {o.kind for o in result.outputs}
        missing = [k for k in step.produces if k not in produced]
        if missing:
            raise ExecutorFailure(
                f"Task '{step.task}' did not produce declared kinds: {', '.join(missing)}",
                retryable=False,
            )
        depends_on = [a.artifact_id for a in inputs]
        return [
            Artifact.create(
                kind=output.kind,
                content=output.content,
                step_id=step.id,
                phase_id=phase.id,
                iteration=iteration,
                depends_on=depends_on,
            )
            for output in result.outputs
        ]

    # ------------------------------------------------------------------
    # Cancellation and termination
    async def _check_cancelled(self) -> None:
        if not self._cancel_requested:
            requests = await self._log.list_events(self.run_id, EventType.CANCEL_REQUESTED)
            self._cancel_requested = bool(requests)
        if self._cancel_requested:
            raise WorkflowCancelled(f"Run {self.run_id} was cancelled")

    async def _terminate(
        self,
        state: RunState,
        reason: Optional[str],
        phase_id: Optional[str] = None,
        phase_state: Optional[PhaseState] = None,
    ) -> None:
        if phase_id is not None and phase_state is not None:
            self.phase_states[phase_id] = phase_state
        self.run.terminate(state, reason)
        await self._emitter.run_terminated(
            state, reason, phase_id, phase_state.value if phase_state else None
        )
        if state is RunState.FAILED:
            logger.error(f"Run failed: {reason} run_id={self.run_id}")
