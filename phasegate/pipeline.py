"""Declarative pipeline definitions: phases, steps and quality gates.

A pipeline is parsed and statically validated once, when it is loaded.
Nothing about step order or gating is interpreted at run time from free text.

Example pipeline file::

    name: delivery
    inputs: [brief]
    phases:
      - id: design
        steps:
          - id: analyze
            task: analyze-requirements
            requires: [brief]
            produces: [requirements]
          - id: architect
            task: design-architecture
            requires: [requirements]
            produces: [architecture]
        gate:
          scorer: design-review
          threshold: 95
          max_iterations: 3
          criteria:
            - name: requirements
              step: analyze
            - name: architecture
              step: architect
              threshold: 90
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_DEFICIENCY_TEMPLATE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_QUALITY_THRESHOLD,
)
from .contracts import RunOptions
from .errors import ArtifactDependencyMissing, PipelineDefinitionError

logger = logging.getLogger(__name__)


class StepDefinition(BaseModel):
    """A single task-executor invocation within a phase."""

    model_config = ConfigDict(frozen=True)

    id: str
    task: str
    requires: List[str] = Field(default_factory=list)
    produces: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class CriterionSpec(BaseModel):
    """A scored criterion and the step responsible for satisfying it."""

    model_config = ConfigDict(frozen=True)

    name: str
    step: str
    threshold: Optional[float] = Field(default=None, ge=0, le=100)
    template: str = DEFAULT_DEFICIENCY_TEMPLATE
    weight: float = Field(default=1.0, ge=0)

    @field_validator("template")
    @classmethod
    def _check_template(cls, v: str) -> str:
        try:
            v.format(criterion="c", score=0.0, threshold=0.0, gap=0.0)
        except (KeyError, IndexError, ValueError) as exc:
            raise ValueError(f"invalid deficiency template {v!r}: {exc}") from exc
        return v

    def pass_threshold(self, gate_threshold: float) -> float:
        return gate_threshold if self.threshold is None else self.threshold

    def describe(self, score: float, threshold: float) -> str:
        """Render the deficiency description for a failing score."""
        return self.template.format(
            criterion=self.name,
            score=score,
            threshold=threshold,
            gap=threshold - score,
        )


class QualityGateSpec(BaseModel):
    """Scoring threshold a phase must clear to advance."""

    model_config = ConfigDict(frozen=True)

    scorer: str
    threshold: float = Field(default=DEFAULT_QUALITY_THRESHOLD, ge=0, le=100)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    criteria: List[CriterionSpec] = Field(default_factory=list)

    @field_validator("criteria")
    @classmethod
    def _unique_criteria(cls, v: List[CriterionSpec]) -> List[CriterionSpec]:
        names = [c.name for c in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate criteria: {', '.join(duplicates)}")
        return v

    def criterion(self, name: str) -> Optional[CriterionSpec]:
        return next((c for c in self.criteria if c.name == name), None)


class PhaseDefinition(BaseModel):
    """An ordered group of steps sharing one quality gate."""

    model_config = ConfigDict(frozen=True)

    id: str
    steps: List[StepDefinition] = Field(min_length=1)
    gate: QualityGateSpec

    @property
    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def step_index(self, step_id: str) -> int:
        try:
            return self.step_ids.index(step_id)
        except ValueError:
            raise KeyError(f"Step '{step_id}' is not part of phase '{self.id}'")

    def step(self, step_id: str) -> StepDefinition:
        return self.steps[self.step_index(step_id)]


class PipelineDefinition(BaseModel):
    """Ordered phases, their steps and gates."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = "1"
    inputs: List[str] = Field(default_factory=list)
    phases: List[PhaseDefinition] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_structure(self) -> "PipelineDefinition":
        phase_ids = [p.id for p in self.phases]
        if len(set(phase_ids)) != len(phase_ids):
            raise ValueError(f"phase ids must be unique: {phase_ids}")

        step_ids = [s.id for p in self.phases for s in p.steps]
        duplicates = sorted({s for s in step_ids if step_ids.count(s) > 1})
        if duplicates:
            raise ValueError(f"step ids must be unique: {', '.join(duplicates)}")

        for phase in self.phases:
            for criterion in phase.gate.criteria:
                if criterion.step not in phase.step_ids:
                    raise ValueError(
                        f"criterion '{criterion.name}' of phase '{phase.id}' maps to "
                        f"unknown step '{criterion.step}'"
                    )
        return self

    def phase(self, phase_id: str) -> PhaseDefinition:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(f"Phase '{phase_id}' not found in pipeline '{self.name}'")

    def all_steps(self) -> Iterable[StepDefinition]:
        for phase in self.phases:
            yield from phase.steps

    def fingerprint(self) -> str:
        """Content-addressed reference of this definition."""
        canonical = json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """Load and validate a pipeline definition from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    pipeline = PipelineDefinition.model_validate(data)
    logger.debug(f"Loaded pipeline {pipeline.name} from {path}")
    return pipeline


def effective_gate(gate: QualityGateSpec, options: RunOptions | None) -> QualityGateSpec:
    """Apply run-level threshold and iteration overrides to a gate."""
    if options is None:
        return gate
    update = {}
    if options.quality_threshold is not None:
        update["threshold"] = options.quality_threshold
    if options.max_iterations_override is not None:
        update["max_iterations"] = options.max_iterations_override
    return gate.model_copy(update=update) if update else gate


def active_steps(phase: PhaseDefinition, skip_steps: Iterable[str] = ()) -> List[StepDefinition]:
    """Steps of ``phase`` that will run, in declaration order."""
    skipped = set(skip_steps)
    return [s for s in phase.steps if s.id not in skipped]


def check_dependencies(
    pipeline: PipelineDefinition,
    available_kinds: Iterable[str],
    skip_steps: Iterable[str] = (),
) -> None:
    """Verify every required kind is produced before it is needed.

    Raises:
        PipelineDefinitionError: If ``skip_steps`` names an unknown step or
            leaves a phase without any step.
        ArtifactDependencyMissing: If a declared pipeline input is absent, or
            an active step requires a kind that no earlier active step (or
            the initial input) provides.
    """
    skipped = set(skip_steps)
    known = {s.id for s in pipeline.all_steps()}
    unknown = sorted(skipped - known)
    if unknown:
        raise PipelineDefinitionError(f"Cannot skip unknown steps: {', '.join(unknown)}")

    kinds = set(available_kinds)
    for kind in pipeline.inputs:
        if kind not in kinds:
            raise ArtifactDependencyMissing(kind)
    for phase in pipeline.phases:
        steps = active_steps(phase, skipped)
        if not steps:
            raise PipelineDefinitionError(f"Phase '{phase.id}' has no steps left to run")
        for step in steps:
            for kind in step.requires:
                if kind not in kinds:
                    raise ArtifactDependencyMissing(kind, step.id)
            kinds.update(step.produces)
