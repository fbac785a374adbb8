"""Workflow orchestrator: the trigger and status surface of phasegate."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .config import PhasegateConfig
from .contracts import RunOptions, WorkflowRun
from .errors import PipelineDefinitionError, RunNotFound
from .persistence import EventLog, EventType, WorkflowEvent, get_event_log
from .pipeline import PipelineDefinition, load_pipeline
from .progress import ProgressTracker, RunSnapshot
from .registry import ScorerRegistry, TaskExecutorRegistry
from .replay import RunReplay
from .sequencer import PhaseSequencer

logger = logging.getLogger(__name__)

PipelineRef = Union[str, Path, PipelineDefinition]


class WorkflowOrchestrator:
    """Service responsible for starting, observing and cancelling runs.

    Each run is driven by its own asyncio task; runs share only the event log.
    """

    def __init__(
        self,
        executors: TaskExecutorRegistry,
        scorers: ScorerRegistry,
        event_log: Optional[EventLog] = None,
        config: Optional[PhasegateConfig] = None,
    ) -> None:
        self._executors = executors
        self._scorers = scorers
        self._config = config or PhasegateConfig()
        self._log = event_log or get_event_log(config=self._config)
        self._tracker = ProgressTracker(self._log)
        self._pipelines: Dict[str, PipelineDefinition] = {}
        self._sequencers: Dict[str, PhaseSequencer] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def event_log(self) -> EventLog:
        return self._log

    def register_pipeline(self, definition: PipelineDefinition) -> PipelineDefinition:
        """Make ``definition`` available under its name."""
        self._pipelines[definition.name] = definition
        logger.debug(f"Registered pipeline {definition.name}")
        return definition

    def _resolve_pipeline(self, pipeline_ref: PipelineRef) -> PipelineDefinition:
        if isinstance(pipeline_ref, PipelineDefinition):
            return pipeline_ref
        if isinstance(pipeline_ref, str) and pipeline_ref in self._pipelines:
            return self._pipelines[pipeline_ref]
        path = Path(pipeline_ref)
        if path.exists():
            return load_pipeline(path)
        raise PipelineDefinitionError(f"Unknown pipeline: {pipeline_ref}")

    async def run_workflow(
        self,
        pipeline_ref: PipelineRef,
        initial_input: Optional[Mapping[str, Any]] = None,
        options: Optional[RunOptions] = None,
    ) -> str:
        """Start a run in the background.

        Args:
            pipeline_ref: Registered pipeline name, a definition, or a YAML path.
            initial_input: Seed artifacts keyed by kind.
            options: Run-level overrides.

        Returns:
            The run id used for ``get_status``, ``cancel`` and ``wait``.
        """
        pipeline = self._resolve_pipeline(pipeline_ref)
        run_id = str(uuid.uuid4())
        run = WorkflowRun(
            run_id=run_id,
            pipeline=pipeline.name,
            pipeline_fingerprint=pipeline.fingerprint(),
        )
        sequencer = self._sequencer(run, pipeline, options)
        await sequencer.start(initial_input)
        self._spawn(run_id, sequencer.drive())
        logger.info(f"Dispatched pipeline {pipeline.name} run_id={run_id}")
        return run_id

    async def run_to_completion(
        self,
        pipeline_ref: PipelineRef,
        initial_input: Optional[Mapping[str, Any]] = None,
        options: Optional[RunOptions] = None,
    ) -> WorkflowRun:
        run_id = await self.run_workflow(pipeline_ref, initial_input, options)
        return await self.wait(run_id)

    async def wait(self, run_id: str) -> WorkflowRun:
        """Wait for the background task of ``run_id`` to finish.

        A finished task is kept until ``wait`` collects it, after which the run
        is only reachable through ``get_status``.
        """
        task = self._tasks.get(run_id)
        if task is None:
            raise RunNotFound(f"Run {run_id} is not active in this orchestrator")
        try:
            return await task
        finally:
            if task.done():
                self._tasks.pop(run_id, None)

    async def get_status(self, run_id: str) -> RunSnapshot:
        return await self._tracker.snapshot(run_id)

    async def cancel(self, run_id: str) -> bool:
        """Request cancellation of a run.

        Returns ``False`` when the run is unknown or already terminal.
        """
        try:
            snapshot = await self._tracker.snapshot(run_id)
        except RunNotFound:
            return False
        if snapshot.state.is_terminal:
            return False

        sequencer = self._sequencers.get(run_id)
        if sequencer is not None:
            sequencer.request_cancel()
        if not snapshot.cancel_requested:
            await self._log.append(
                WorkflowEvent(run_id=run_id, event_type=EventType.CANCEL_REQUESTED)
            )
        logger.info(f"Cancel acknowledged for run_id={run_id}")
        return True

    async def resume(self, run_id: str, pipeline_ref: Optional[PipelineRef] = None) -> str:
        """Continue a run that stopped without reaching a terminal state.

        Raises:
            RunNotFound: If no events exist for ``run_id``.
            ValueError: If the run already terminated or is still active here.
            PipelineDefinitionError: If the pipeline differs from the one the
                run was started with.
        """
        if run_id in self._tasks and not self._tasks[run_id].done():
            raise ValueError(f"Run {run_id} is still active")

        replay = RunReplay.from_events(run_id, await self._log.list_events(run_id))
        if replay.run.state.is_terminal:
            raise ValueError(f"Run {run_id} already terminated as {replay.run.state.value}")

        pipeline = self._resolve_pipeline(pipeline_ref or replay.run.pipeline)
        if pipeline.fingerprint() != replay.run.pipeline_fingerprint:
            raise PipelineDefinitionError(
                f"Pipeline {pipeline.name} changed since run {run_id} was started"
            )

        sequencer = self._sequencer(replay.run, pipeline, replay.options)
        self._spawn(run_id, sequencer.resume(replay))
        return run_id

    def _sequencer(
        self,
        run: WorkflowRun,
        pipeline: PipelineDefinition,
        options: Optional[RunOptions],
    ) -> PhaseSequencer:
        sequencer = PhaseSequencer(
            run,
            pipeline,
            self._executors,
            self._scorers,
            self._log,
            config=self._config.execution,
            options=options,
        )
        self._sequencers[run.run_id] = sequencer
        return sequencer

    def _spawn(self, run_id: str, coro) -> None:
        task = asyncio.create_task(coro, name=f"phasegate-run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._finished(run_id, t))

    def _finished(self, run_id: str, task: asyncio.Task) -> None:
        self._sequencers.pop(run_id, None)
        # The sequencer has already logged an unexpected error; reading it here
        # keeps asyncio from reporting it again when nobody waits.
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Run task ended with {task.exception()!r} run_id={run_id}")
