"""phasegate: quality-gated, multi-phase workflow orchestration."""

from .artifacts import ArtifactStore
from .config import PhasegateConfig, load_config
from .contracts import (
    Artifact,
    ArtifactOutput,
    FeedbackRecord,
    PhaseState,
    QualityGateResult,
    RunOptions,
    RunState,
    ScoreReport,
    TaskRequest,
    TaskResult,
    WorkflowRun,
)
from .dispatch import WorkflowOrchestrator
from .errors import (
    ArtifactDependencyMissing,
    ExecutorFailure,
    MaxIterationsExceeded,
    PhasegateError,
    PipelineDefinitionError,
    RunNotFound,
    WorkflowCancelled,
)
from .persistence import get_event_log
from .pipeline import PipelineDefinition, load_pipeline
from .progress import ProgressTracker, RunSnapshot
from .registry import ScorerRegistry, TaskExecutorRegistry
from .sequencer import PhaseSequencer

__version__ = "0.1.0"
__all__ = [
    "Artifact",
    "ArtifactDependencyMissing",
    "ArtifactOutput",
    "ArtifactStore",
    "ExecutorFailure",
    "FeedbackRecord",
    "MaxIterationsExceeded",
    "PhaseSequencer",
    "PhaseState",
    "PhasegateConfig",
    "PhasegateError",
    "PipelineDefinition",
    "PipelineDefinitionError",
    "ProgressTracker",
    "QualityGateResult",
    "RunNotFound",
    "RunOptions",
    "RunSnapshot",
    "RunState",
    "ScoreReport",
    "ScorerRegistry",
    "TaskExecutorRegistry",
    "TaskRequest",
    "TaskResult",
    "WorkflowCancelled",
    "WorkflowOrchestrator",
    "WorkflowRun",
    "get_event_log",
    "load_config",
    "load_pipeline",
]
