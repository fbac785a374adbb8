"""Event log abstraction for workflow run persistence."""

from __future__ import annotations

from typing import Protocol

from .models import EventType, RunSummary, WorkflowEvent


class EventLog(Protocol):
    """Protocol for append-only run event log backends.

    Events of a run are returned in append order; ``append`` assigns the
    per-run ``sequence`` number.
    """

    async def append(self, event: WorkflowEvent) -> WorkflowEvent:
        """Persist ``event`` and return it with its sequence number."""

    async def list_events(
        self, run_id: str, event_type: EventType | None = None
    ) -> list[WorkflowEvent]:
        """Return the events of ``run_id``, optionally filtered by type."""

    async def list_runs(self) -> list[RunSummary]:
        """Return one summary per persisted run."""
