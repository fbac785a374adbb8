"""Append-only, per-run artifact store."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional

from .contracts import Artifact
from .errors import ArtifactDependencyMissing, ArtifactNotFound

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Record of the artifacts produced by one workflow run.

    Artifacts are never replaced: a retried step appends a new artifact that
    shadows the previous iteration's one, which stays retrievable by
    iteration number. Every artifact is assigned a monotonically increasing
    sequence number on insertion.
    """

    def __init__(self, run_id: str = "") -> None:
        self.run_id = run_id
        self._artifacts: Dict[str, Artifact] = {}
        self._order: List[str] = []
        self._sequence: Dict[str, int] = {}

    def put(self, artifact: Artifact) -> str:
        """Store ``artifact`` and return its id.

        Raises:
            ArtifactDependencyMissing: If a declared dependency is not stored yet.
        """
        if artifact.artifact_id in self._artifacts:
            return artifact.artifact_id
        for dep_id in artifact.depends_on:
            if dep_id not in self._artifacts:
                raise ArtifactDependencyMissing(dep_id, artifact.step_id)
        self._artifacts[artifact.artifact_id] = artifact
        self._order.append(artifact.artifact_id)
        self._sequence[artifact.artifact_id] = len(self._order)
        logger.debug(
            f"Stored {artifact.kind} artifact {artifact.artifact_id[:12]} "
            f"(step={artifact.step_id}, iteration={artifact.iteration}) for run_id={self.run_id}"
        )
        return artifact.artifact_id

    def get(self, artifact_id: str) -> Artifact:
        if artifact_id not in self._artifacts:
            raise ArtifactNotFound(f"Artifact not found: {artifact_id}")
        return self._artifacts[artifact_id]

    def sequence_of(self, artifact_id: str) -> int:
        """Insertion position (1-based) of an artifact."""
        if artifact_id not in self._sequence:
            raise ArtifactNotFound(f"Artifact not found: {artifact_id}")
        return self._sequence[artifact_id]

    def list_by_kind_and_phase(self, kind: str, phase_id: Optional[str]) -> List[Artifact]:
        """Artifacts of ``kind`` produced in ``phase_id``, most recent last."""
        return [
            a for a in self if a.kind == kind and a.phase_id == phase_id
        ]

    def get_by_iteration(self, kind: str, phase_id: str, iteration: int) -> Artifact:
        for artifact in reversed(self.list_by_kind_and_phase(kind, phase_id)):
            if artifact.iteration == iteration:
                return artifact
        raise ArtifactNotFound(
            f"No {kind} artifact for phase {phase_id} at iteration {iteration}"
        )

    def latest(self, kind: str) -> Artifact:
        """Newest artifact of ``kind`` anywhere in the run."""
        for artifact_id in reversed(self._order):
            artifact = self._artifacts[artifact_id]
            if artifact.kind == kind:
                return artifact
        raise ArtifactDependencyMissing(kind)

    def current_view(self, phase_id: str) -> List[Artifact]:
        """Newest artifact per kind produced in ``phase_id``, in store order."""
        newest: Dict[str, Artifact] = {}
        for artifact in self:
            if artifact.phase_id == phase_id:
                newest[artifact.kind] = artifact
        return sorted(newest.values(), key=lambda a: self._sequence[a.artifact_id])

    def kinds(self) -> set[str]:
        return {a.kind for a in self}

    def __contains__(self, artifact_id: object) -> bool:
        return artifact_id in self._artifacts

    def __iter__(self) -> Iterator[Artifact]:
        return (self._artifacts[a] for a in self._order)

    def __len__(self) -> int:
        return len(self._order)
