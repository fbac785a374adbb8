"""Feedback loop control after a failed quality gate."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Union

from .config import RetryScope
from .constants import EVALUATION_ERROR_CRITERION
from .contracts import Deficiency, Escalation, FeedbackRecord, QualityGateResult
from .pipeline import PhaseDefinition, StepDefinition

logger = logging.getLogger(__name__)


class FeedbackLoopController:
    """Decides between a feedback-driven retry and escalation.

    The retry target is a table lookup: the lowest-scoring criterion names
    the step responsible for it. Ties resolve to the earliest step.
    """

    def on_gate_failure(
        self,
        result: QualityGateResult,
        phase: PhaseDefinition,
        max_iterations: Optional[int] = None,
        active_steps: Optional[Sequence[StepDefinition]] = None,
        gate_threshold: Optional[float] = None,
    ) -> Union[FeedbackRecord, Escalation]:
        """Build the feedback for ``result`` or escalate.

        Args:
            result: The failing gate result.
            phase: Definition of the phase that failed.
            max_iterations: Iteration budget; defaults to the phase gate's.
            active_steps: Steps that run in this workflow (skipped steps
                excluded); defaults to every step of the phase.
            gate_threshold: Effective gate threshold used as the default
                per-criterion threshold; defaults to ``result.threshold``.
        """
        budget = max_iterations if max_iterations is not None else phase.gate.max_iterations
        if result.iteration >= budget:
            logger.warning(
                f"Phase {phase.id} exhausted {budget} iteration(s); escalating"
            )
            return Escalation(
                phase_id=phase.id, iteration=result.iteration, gate_result=result
            )

        steps = list(active_steps) if active_steps is not None else list(phase.steps)
        threshold = gate_threshold if gate_threshold is not None else result.threshold
        deficiencies = self.deficiencies(result, phase, threshold)
        target = self.retry_target(result, phase, steps)
        feedback = FeedbackRecord(
            gate_result=result,
            retry_target_step_id=target,
            deficiencies=deficiencies,
            iteration=result.iteration + 1,
        )
        logger.info(
            f"Phase {phase.id} iteration {result.iteration} failed; retrying from "
            f"step {target} ({len(deficiencies)} deficiencies)"
        )
        return feedback

    @staticmethod
    def _sub_score(result: QualityGateResult, name: str) -> float:
        return result.sub_scores.get(name, 0.0)

    def deficiencies(
        self, result: QualityGateResult, phase: PhaseDefinition, gate_threshold: float
    ) -> List[Deficiency]:
        """Every criterion scoring below its own pass threshold."""
        found: List[Deficiency] = []
        if result.error is not None:
            found.append(
                Deficiency(
                    criterion=EVALUATION_ERROR_CRITERION,
                    score=0.0,
                    threshold=gate_threshold,
                    description=f"Quality evaluation failed: {result.error}",
                )
            )
            return found
        for criterion in phase.gate.criteria:
            score = self._sub_score(result, criterion.name)
            threshold = criterion.pass_threshold(gate_threshold)
            if score < threshold:
                found.append(
                    Deficiency(
                        criterion=criterion.name,
                        score=score,
                        threshold=threshold,
                        description=criterion.describe(score, threshold),
                    )
                )
        return found

    def retry_target(
        self,
        result: QualityGateResult,
        phase: PhaseDefinition,
        active_steps: Sequence[StepDefinition],
    ) -> str:
        """Step id the next iteration starts from."""
        if not active_steps:
            raise ValueError(f"Phase {phase.id} has no active steps to retry")
        active_ids = [s.id for s in active_steps]
        criteria = phase.gate.criteria
        if result.error is not None or not criteria:
            return active_ids[0]

        lowest = min(self._sub_score(result, c.name) for c in criteria)
        candidates = [c.step for c in criteria if self._sub_score(result, c.name) == lowest]
        target = min(candidates, key=phase.step_index)
        return self._nearest_active(phase, target, active_ids)

    @staticmethod
    def _nearest_active(phase: PhaseDefinition, target: str, active_ids: List[str]) -> str:
        if target in active_ids:
            return target
        position = phase.step_index(target)
        for step in phase.steps[position + 1 :]:
            if step.id in active_ids:
                return step.id
        return active_ids[0]


def steps_to_rerun(
    phase: PhaseDefinition,
    target_step_id: str,
    active_steps: Sequence[StepDefinition],
    scope: RetryScope = "cascade",
) -> List[StepDefinition]:
    """Steps executed in a feedback iteration starting at ``target_step_id``."""
    position = phase.step_index(target_step_id)
    if scope == "target_only":
        return [s for s in active_steps if s.id == target_step_id]
    return [s for s in active_steps if phase.step_index(s.id) >= position]
