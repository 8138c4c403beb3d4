"""Engine configuration."""

from enum import Enum
from typing import Optional

from croniter import croniter
from pydantic import BaseModel, Field, field_validator


class FailurePolicy(str, Enum):
    FAIL_FAST = "fail_fast"         # Stop scheduling new nodes after a failure
    BEST_EFFORT = "best_effort"     # Keep applying independent subtrees


class EngineConfig(BaseModel):
    """Configuration for planning, applying and drift watching."""

    max_workers: int = Field(ge=1, default=8)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    max_retries: int = Field(ge=0, default=3)
    retry_base_delay_seconds: float = Field(ge=0, default=0.5)
    retry_max_delay_seconds: float = Field(ge=0, default=8.0)
    poll_interval_seconds: float = Field(ge=0, default=1.0)
    poll_max_interval_seconds: float = Field(ge=0, default=15.0)
    operation_timeout_seconds: float = Field(gt=0, default=600.0)
    drift_schedule: Optional[str] = None    # Cron expression for the drift watcher

    @field_validator("drift_schedule")
    @classmethod
    def _valid_cron(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value
