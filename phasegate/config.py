from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_SCORER_TIMEOUT_SECONDS,
    DEFAULT_STEP_DEADLINE_SECONDS,
    DEFAULT_TRANSIENT_RETRIES,
)

RetryScope = Literal["cascade", "target_only"]


class EventLogConfig(BaseModel):
    """Configuration for the run event log."""

    database_url: Optional[str] = None


class ExecutionConfig(BaseModel):
    """Sequencer execution settings."""

    transient_retries: int = Field(default=DEFAULT_TRANSIENT_RETRIES, ge=0)
    step_deadline_seconds: Optional[float] = Field(
        default=DEFAULT_STEP_DEADLINE_SECONDS, gt=0
    )
    scorer_timeout_seconds: Optional[float] = Field(
        default=DEFAULT_SCORER_TIMEOUT_SECONDS, gt=0
    )
    retry_backoff_base: float = Field(default=1.5, ge=0)
    retry_backoff_jitter: float = Field(default=0.5, ge=0)
    # cascade: re-run the retry target and every later step of the phase.
    retry_scope: RetryScope = "cascade"


class PhasegateConfig(BaseModel):
    """Top-level configuration model."""

    event_log: EventLogConfig = EventLogConfig()
    execution: ExecutionConfig = ExecutionConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> PhasegateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PHASEGATE_CONFIG env
            variable or 'phasegate.yaml' in the current directory.
    """

    config_path = path or os.getenv("PHASEGATE_CONFIG", "phasegate.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PhasegateConfig(**data)
    else:
        config = PhasegateConfig()

    env_db_url = os.getenv("PHASEGATE_DATABASE_URL")
    if env_db_url:
        config.event_log.database_url = env_db_url
    return config
