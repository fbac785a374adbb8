"""Named quality-scoring functions used by quality gates."""

from __future__ import annotations

import abc
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from ..contracts import Artifact, ScoreReport
from ..pipeline import CriterionSpec

logger = logging.getLogger(__name__)

ScorerReturn = Union[ScoreReport, Dict[str, Any], float, int]
ScorerCallable = Callable[
    [List[Artifact], List[CriterionSpec]], Union[ScorerReturn, Awaitable[ScorerReturn]]
]


class QualityScorer(metaclass=abc.ABCMeta):
    """Scores a phase's artifacts against its gate criteria."""

    name: str = ""

    @abc.abstractmethod
    async def score(
        self, artifacts: List[Artifact], criteria: List[CriterionSpec]
    ) -> ScorerReturn:
        """Return an aggregate score and per-criterion sub-scores (0..100)."""
        raise NotImplementedError


class CallableScorer(QualityScorer):
    """Adapter turning a plain (sync or async) function into a ``QualityScorer``."""

    def __init__(self, name: str, fn: ScorerCallable) -> None:
        self.name = name
        self._fn = fn

    async def score(
        self, artifacts: List[Artifact], criteria: List[CriterionSpec]
    ) -> ScorerReturn:
        result = self._fn(artifacts, criteria)
        if inspect.isawaitable(result):
            result = await result
        return result


class WeightedAverageScorer(QualityScorer):
    """Aggregate criterion sub-scores produced by ``criterion_fn`` by weight.

    ``criterion_fn(criterion, artifacts)`` returns the sub-score of one
    criterion; the aggregate is the weighted mean of all sub-scores.
    """

    def __init__(
        self,
        name: str,
        criterion_fn: Callable[[CriterionSpec, List[Artifact]], Union[float, Awaitable[float]]],
    ) -> None:
        self.name = name
        self._criterion_fn = criterion_fn

    async def score(
        self, artifacts: List[Artifact], criteria: List[CriterionSpec]
    ) -> ScoreReport:
        sub_scores: Dict[str, float] = {}
        for criterion in criteria:
            value = self._criterion_fn(criterion, artifacts)
            if inspect.isawaitable(value):
                value = await value
            sub_scores[criterion.name] = float(value)
        total_weight = sum(c.weight for c in criteria)
        if not criteria or total_weight == 0:
            aggregate = 0.0
        else:
            aggregate = sum(sub_scores[c.name] * c.weight for c in criteria) / total_weight
        return ScoreReport(aggregate_score=aggregate, sub_scores=sub_scores)


class ScorerRegistry:
    """Name to scoring-function lookup supplied at startup."""

    def __init__(self) -> None:
        self._scorers: Dict[str, QualityScorer] = {}

    def register(self, name: str, scorer: QualityScorer | ScorerCallable) -> QualityScorer:
        if name in self._scorers:
            raise ValueError(f"Scorer '{name}' is already registered")
        if not isinstance(scorer, QualityScorer):
            if not callable(scorer):
                raise TypeError(f"Scorer for '{name}' must be a QualityScorer or callable")
            scorer = CallableScorer(name, scorer)
        self._scorers[name] = scorer
        logger.debug(f"Registered scorer {name}")
        return scorer

    def scorer(self, name: str) -> Callable[[ScorerCallable], ScorerCallable]:
        """Decorator form of ``register``."""

        def decorator(fn: ScorerCallable) -> ScorerCallable:
            self.register(name, fn)
            return fn

        return decorator

    def get(self, name: str) -> QualityScorer:
        if name not in self._scorers:
            available = ", ".join(sorted(self._scorers)) or "(none)"
            raise KeyError(f"Scorer '{name}' not found. Available scorers: {available}")
        return self._scorers[name]

    def names(self) -> List[str]:
        return sorted(self._scorers)

    def __contains__(self, name: object) -> bool:
        return name in self._scorers

    async def score(
        self, name: str, artifacts: List[Artifact], criteria: List[CriterionSpec]
    ) -> ScoreReport:
        """Resolve ``name`` and return its validated report."""
        raw = await self.get(name).score(artifacts, criteria)
        if isinstance(raw, ScoreReport):
            return raw
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return ScoreReport(aggregate_score=float(raw))
        return ScoreReport.model_validate(raw)
