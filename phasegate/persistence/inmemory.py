"""In-memory implementation of the run event log."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, List

from .models import EventType, RunSummary, WorkflowEvent
from .repository import EventLog


def summarize(run_id: str, events: List[WorkflowEvent]) -> RunSummary:
    """Derive a ``RunSummary`` from the events of one run."""
    summary = RunSummary(run_id=run_id)
    for event in events:
        if event.event_type == EventType.RUN_STARTED:
            summary.pipeline = event.payload.get("pipeline")
            summary.created_at = event.created_at
        elif event.event_type == EventType.RUN_TERMINATED:
            summary.state = event.payload.get("state", summary.state)
    return summary


class InMemoryEventLog(EventLog):
    """Store run events in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._events: Dict[str, List[WorkflowEvent]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, event: WorkflowEvent) -> WorkflowEvent:
        async with self._lock:
            events = self._events[event.run_id]
            stored = event.model_copy(update={"sequence": len(events) + 1})
            events.append(stored)
        return stored

    async def list_events(
        self, run_id: str, event_type: EventType | None = None
    ) -> list[WorkflowEvent]:
        events = list(self._events.get(run_id, []))
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events

    async def list_runs(self) -> list[RunSummary]:
        return [summarize(run_id, events) for run_id, events in self._events.items()]
