"""Error taxonomy for the phasegate orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .contracts import Escalation


class PhasegateError(Exception):
    """Base class for all orchestrator errors."""


class ExecutorFailure(PhasegateError):
    """A task executor errored or timed out.

    ``retryable`` failures are retried locally by the sequencer up to the
    configured transient-retry count; anything else fails the phase.
    """

    def __init__(self, reason: str, retryable: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable


class ArtifactDependencyMissing(PhasegateError):
    """A step needs an artifact kind (or id) that has not been produced."""

    def __init__(self, dependency: str, step_id: str | None = None) -> None:
        where = f" required by step '{step_id}'" if step_id else ""
        super().__init__(f"Artifact dependency '{dependency}'{where} is missing")
        self.dependency = dependency
        self.step_id = step_id


class ArtifactNotFound(KeyError):
    """Raised when an artifact id is not present in the store."""


class MaxIterationsExceeded(PhasegateError):
    """The feedback loop of a phase exhausted its iteration budget."""

    def __init__(self, escalation: "Escalation") -> None:
        super().__init__(
            f"Phase '{escalation.phase_id}' failed its quality gate "
            f"{escalation.iteration} time(s); last score "
            f"{escalation.gate_result.score:g} < {escalation.gate_result.threshold:g}"
        )
        self.escalation = escalation


class EvaluationError(PhasegateError):
    """The scoring function failed; converted into a failing gate result."""


class WorkflowCancelled(PhasegateError):
    """An external cancellation request was honoured."""


class PipelineDefinitionError(PhasegateError):
    """A pipeline definition is invalid or does not match a persisted run."""


class RunNotFound(KeyError):
    """Raised when no events exist for the requested run id."""
