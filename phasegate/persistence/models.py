"""Data models for the persisted, append-only run event log."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Kinds of events recorded for a workflow run."""

    RUN_STARTED = "RunStarted"
    STEP_STARTED = "StepStarted"
    STEP_COMPLETED = "StepCompleted"
    STEP_FAILED = "StepFailed"
    GATE_STARTED = "GateStarted"
    GATE_EVALUATED = "GateEvaluated"
    FEEDBACK_ISSUED = "FeedbackIssued"
    PHASE_ADVANCED = "PhaseAdvanced"
    CANCEL_REQUESTED = "CancelRequested"
    RUN_TERMINATED = "RunTerminated"


class WorkflowEvent(BaseModel):
    """Single state transition of a workflow run."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    event_type: EventType
    sequence: Optional[int] = None
    phase_id: Optional[str] = None
    step_id: Optional[str] = None
    iteration: Optional[int] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RunSummary(BaseModel):
    """Lightweight listing entry for a persisted run."""

    run_id: str
    pipeline: Optional[str] = None
    state: str = "RUNNING"
    created_at: Optional[datetime] = None
