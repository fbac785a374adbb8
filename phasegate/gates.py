"""Quality gate evaluation."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .constants import EVALUATION_ERROR_CRITERION
from .contracts import Artifact, QualityGateResult
from .emitter import RunEventEmitter
from .errors import EvaluationError
from .pipeline import QualityGateSpec
from .registry import ScorerRegistry

logger = logging.getLogger(__name__)


class QualityGateEvaluator:
    """Scores a phase's artifacts and decides pass or fail.

    Evaluation always terminates with a ``QualityGateResult``: if the scoring
    function cannot be resolved, crashes, times out or reports an invalid
    score, the gate fails with score 0 and an ``EvaluationError`` criterion.
    """

    def __init__(
        self,
        scorers: ScorerRegistry,
        emitter: Optional[RunEventEmitter] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._scorers = scorers
        self._emitter = emitter
        self._timeout = timeout_seconds

    async def evaluate(
        self,
        phase_id: str,
        iteration: int,
        artifacts: List[Artifact],
        gate_spec: QualityGateSpec,
    ) -> QualityGateResult:
        try:
            report = await self._score(artifacts, gate_spec)
        except EvaluationError as e:
            logger.warning(f"Gate of phase {phase_id} could not be evaluated: {e}")
            result = QualityGateResult(
                phase_id=phase_id,
                iteration=iteration,
                score=0.0,
                threshold=gate_spec.threshold,
                passed=False,
                sub_scores={EVALUATION_ERROR_CRITERION: 0.0},
                error=str(e),
            )
        else:
            result = QualityGateResult(
                phase_id=phase_id,
                iteration=iteration,
                score=report.aggregate_score,
                threshold=gate_spec.threshold,
                passed=report.aggregate_score >= gate_spec.threshold,
                sub_scores=report.sub_scores,
            )

        logger.info(
            f"Gate of phase {phase_id} iteration {iteration}: score {result.score:g} "
            f"vs threshold {result.threshold:g} -> {'PASS' if result.passed else 'FAIL'}"
        )
        if self._emitter is not None:
            await self._emitter.gate_evaluated(result)
        return result

    async def _score(self, artifacts: List[Artifact], gate_spec: QualityGateSpec):
        if gate_spec.scorer not in self._scorers:
            raise EvaluationError(f"Scorer '{gate_spec.scorer}' is not registered")
        call = self._call_scorer(artifacts, gate_spec)
        if self._timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise EvaluationError(
                f"Scorer '{gate_spec.scorer}' timed out after {self._timeout:g}s"
            ) from e

    async def _call_scorer(self, artifacts: List[Artifact], gate_spec: QualityGateSpec):
        # Errors raised by the scorer itself, TimeoutError included, never
        # reach the deadline handler in ``_score``.
        try:
            return await self._scorers.score(
                gate_spec.scorer, artifacts, list(gate_spec.criteria)
            )
        except Exception as e:
            raise EvaluationError(
                f"Scorer '{gate_spec.scorer}' failed: {type(e).__name__}: {e}"
            ) from e
