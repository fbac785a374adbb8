"""Persistence layer for phasegate run event logs."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PhasegateConfig, load_config
from .inmemory import InMemoryEventLog
from .models import EventType, RunSummary, WorkflowEvent
from .repository import EventLog
from .sqlite import SQLiteEventLog


def get_event_log(
    database_url: Optional[str] = None, config: Optional[PhasegateConfig] = None
) -> EventLog:
    """Factory function to obtain a run event log.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``PHASEGATE_DATABASE_URL``, or from
    loaded configuration. When no database is configured, an in-memory event
    log is returned. Every call builds a new event log.
    """
    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PHASEGATE_DATABASE_URL")
        or config.event_log.database_url
    )

    if not database_url:
        return InMemoryEventLog()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteEventLog(path)
    raise ValueError(f"Unsupported event log backend: {database_url}")


__all__ = [
    "EventLog",
    "EventType",
    "InMemoryEventLog",
    "RunSummary",
    "SQLiteEventLog",
    "WorkflowEvent",
    "get_event_log",
]
