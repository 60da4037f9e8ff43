from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProgressEventType(str, Enum):
    """Step-lifecycle events rendered by a live progress list."""

    PLAN_START = "plan_start"
    PLAN_RETRY = "plan_retry"
    PLAN_READY = "plan_ready"
    PLAN_ERROR = "plan_error"
    STEP_START = "step_start"
    STEP_DONE = "step_done"
    STEP_FAILED = "step_failed"
    RECOVERY_DECISION = "recovery_decision"
    SYNTHESIS_TOKEN = "synthesis_token"
    ALL_DONE = "all_done"


class ProgressEvent(BaseModel):
    event_type: ProgressEventType
    message: str = ""
    step_index: int | None = Field(default=None)
    total_steps: int | None = Field(default=None)
    skill: str | None = None
    description: str | None = None
    stdout: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


ProgressEmitter = Callable[[ProgressEvent], Awaitable[None]]


__all__ = ["ProgressEmitter", "ProgressEvent", "ProgressEventType"]
