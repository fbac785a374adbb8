"""Core data contracts for the phasegate workflow system."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import INPUT_STEP_ID

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(str, Enum):
    """Overall state of a workflow run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RunState.PASSED, RunState.FAILED, RunState.CANCELLED})


class PhaseState(str, Enum):
    """Per-phase sub-state inside a running workflow."""

    PENDING = "PENDING"
    EXECUTING_STEPS = "EXECUTING_STEPS"
    GATE_EVALUATING = "GATE_EVALUATING"
    GATE_PASSED = "GATE_PASSED"
    GATE_FAILED = "GATE_FAILED"
    FEEDBACK_LOOP = "FEEDBACK_LOOP"
    ESCALATED = "ESCALATED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


def _score_in_range(value: float) -> float:
    if not 0 <= value <= 100:
        raise ValueError(f"score must be within 0..100, got {value}")
    return value


class Artifact(BaseModel):
    """Immutable, versioned output of a step."""

    model_config = ConfigDict(frozen=True)

    artifact_id: str
    kind: str
    content: Any = None
    phase_id: Optional[str] = None
    step_id: str
    iteration: int = 0
    depends_on: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    @staticmethod
    def compute_id(
        kind: str,
        content: Any,
        phase_id: Optional[str],
        step_id: str,
        iteration: int,
        depends_on: List[str],
    ) -> str:
        """Content address of an artifact and its provenance."""
        canonical = json.dumps(
            {
                "kind": kind,
                "content": content,
                "phase_id": phase_id,
                "step_id": step_id,
                "iteration": iteration,
                "depends_on": list(depends_on),
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def create(
        cls,
        kind: str,
        content: Any,
        step_id: str,
        phase_id: Optional[str] = None,
        iteration: int = 0,
        depends_on: Optional[List[str]] = None,
    ) -> "Artifact":
        depends_on = list(depends_on or [])
        return cls(
            artifact_id=cls.compute_id(
                kind, content, phase_id, step_id, iteration, depends_on
            ),
            kind=kind,
            content=content,
            phase_id=phase_id,
            step_id=step_id,
            iteration=iteration,
            depends_on=depends_on,
        )

    @classmethod
    def seed(cls, kind: str, content: Any) -> "Artifact":
        """Build an artifact from a run's initial input."""
        return cls.create(kind=kind, content=content, step_id=INPUT_STEP_ID)


class ArtifactOutput(BaseModel):
    """Output produced by a task executor before it is stamped into an artifact."""

    kind: str
    content: Any = None


class ExecutionMetadata(BaseModel):
    duration_ms: float = 0.0
    executor_version: str = "unknown"


class Deficiency(BaseModel):
    """One criterion that fell below its individual pass threshold."""

    model_config = ConfigDict(frozen=True)

    criterion: str
    score: float
    threshold: float
    description: str


class QualityGateResult(BaseModel):
    """Outcome of one gate evaluation; one per (phase, iteration)."""

    model_config = ConfigDict(frozen=True)

    phase_id: str
    iteration: int
    score: float
    threshold: float
    passed: bool
    sub_scores: Dict[str, float] = Field(default_factory=dict)
    error: Optional[str] = None
    evaluated_at: datetime = Field(default_factory=_utcnow)

    check_scores = field_validator("score", "threshold")(_score_in_range)


class FeedbackRecord(BaseModel):
    """Structured feedback handed to the steps re-executed after a gate failure."""

    model_config = ConfigDict(frozen=True)

    gate_result: QualityGateResult
    retry_target_step_id: str
    deficiencies: List[Deficiency] = Field(default_factory=list)
    iteration: int

    def summary(self) -> str:
        """Human readable list of deficiencies."""
        if not self.deficiencies:
            return (
                f"Aggregate score {self.gate_result.score:g} is below "
                f"{self.gate_result.threshold:g}"
            )
        return "; ".join(d.description for d in self.deficiencies)


class Escalation(BaseModel):
    """Terminal failure of a phase after its iteration budget is spent."""

    model_config = ConfigDict(frozen=True)

    reason: str = "MaxIterationsExceeded"
    phase_id: str
    iteration: int
    gate_result: QualityGateResult


class TaskRequest(BaseModel):
    """Invocation request sent to a task executor."""

    run_id: str
    task_name: str
    step_id: str
    phase_id: str
    iteration: int
    inputs: List[Artifact] = Field(default_factory=list)
    feedback: Optional[FeedbackRecord] = None
    deadline_seconds: Optional[float] = None

    def input_of_kind(self, kind: str) -> Optional[Artifact]:
        """Return the input artifact of ``kind`` if present."""
        return next((a for a in self.inputs if a.kind == kind), None)


class TaskResult(BaseModel):
    """Successful response of a task executor."""

    outputs: List[ArtifactOutput] = Field(default_factory=list)
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)


class ScoreReport(BaseModel):
    """Response of a quality-scoring function."""

    aggregate_score: float
    sub_scores: Dict[str, float] = Field(default_factory=dict)

    check_aggregate = field_validator("aggregate_score")(_score_in_range)

    @field_validator("sub_scores")
    @classmethod
    def _check_sub_scores(cls, v: Dict[str, float]) -> Dict[str, float]:
        for value in v.values():
            _score_in_range(value)
        return v


class RunOptions(BaseModel):
    """Run-level overrides supplied when a workflow is triggered."""

    quality_threshold: Optional[float] = None
    skip_steps: List[str] = Field(default_factory=list)
    max_iterations_override: Optional[int] = Field(default=None, ge=1)

    @field_validator("quality_threshold")
    @classmethod
    def _check_threshold(cls, v: Optional[float]) -> Optional[float]:
        return v if v is None else _score_in_range(v)


class WorkflowRun(BaseModel):
    """One execution of a pipeline definition."""

    run_id: str
    pipeline: str
    pipeline_fingerprint: str = ""
    phase_index: int = 0
    step_index: int = 0
    state: RunState = RunState.PENDING
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    terminated_at: Optional[datetime] = None

    def terminate(self, state: RunState, reason: Optional[str] = None) -> None:
        """Move the run into a terminal state."""
        if not state.is_terminal:
            raise ValueError(f"{state} is not a terminal state")
        self.state = state
        self.reason = reason
        self.terminated_at = _utcnow()
        logger.info(f"Run terminated as {state.value} for run_id={self.run_id}")
