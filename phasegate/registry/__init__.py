"""Registries for the external collaborators a pipeline dispatches to."""

from __future__ import annotations

from .executors import CallableExecutor, TaskExecutor, TaskExecutorRegistry
from .scorers import CallableScorer, QualityScorer, ScorerRegistry, WeightedAverageScorer

__all__ = [
    "CallableExecutor",
    "CallableScorer",
    "QualityScorer",
    "ScorerRegistry",
    "TaskExecutor",
    "TaskExecutorRegistry",
    "WeightedAverageScorer",
]
