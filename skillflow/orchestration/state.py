from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..schemas.skills import (
    BrowserSessionContext,
    PendingQuestion,
    RecoveryContext,
    SkillStep,
    StepResult,
)

AUTOMATION_INTENT = "command_automate"


class RunStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    RECOVERING = "recovering"
    SUCCEEDED = "succeeded"
    AWAITING_USER = "awaiting_user"
    FAILED = "failed"


class RecoveryAction(str, Enum):
    AUTO_PATCH = "auto_patch"
    REPLAN = "replan"
    ASK_USER = "ask_user"


class ErrorKind(str, Enum):
    PLAN_ERROR = "plan_error"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    ENGINE_LOOP_LIMIT = "engine_loop_limit"
    STAGE_ERROR = "stage_error"


class TraceEntry(BaseModel):
    stage: str
    duration_ms: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error: str | None = None
    parallel: bool = False


class WorkflowState(BaseModel):
    """Mutable state threaded through every stage of one run.

    Stages never mutate it directly; they return a partial update that the
    engine merges with :meth:`apply`. Keys that do not name a field land in
    ``scratch`` so collaborator stages can pass data along without widening
    the model.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str = Field(default_factory=lambda: uuid4().hex)
    request: str = ""
    resolved_request: str | None = None
    intent: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[dict[str, str]] = Field(default_factory=list)
    memories: list[dict[str, Any]] = Field(default_factory=list)

    status: RunStatus = RunStatus.PLANNING
    skill_plan: list[SkillStep] | None = None
    skill_cursor: int = Field(default=0, ge=0)
    skill_results: list[StepResult] = Field(default_factory=list)
    results_offset: int = Field(default=0, ge=0)
    failed_step: StepResult | None = None
    step_retry_count: int = Field(default=0, ge=0)
    recovery_context: RecoveryContext | None = None
    recovery_action: RecoveryAction | None = None
    recovery_note: str | None = None
    recovery_occurrences: dict[str, int] = Field(default_factory=dict)
    browser_session: BrowserSessionContext = Field(default_factory=BrowserSessionContext)
    synthesis_variables: dict[str, str] = Field(default_factory=dict)
    pending_question: PendingQuestion | None = None
    plan_error: str | None = None
    command_executed: bool = False
    answer: str | None = None

    error: str | None = None
    error_kind: ErrorKind | None = None
    failed_stage: str | None = None
    parallel_errors: list[dict[str, str]] = Field(default_factory=list)
    trace: list[TraceEntry] = Field(default_factory=list)
    iterations: int = 0
    elapsed_ms: float = 0.0
    success: bool = False
    scratch: dict[str, Any] = Field(default_factory=dict)

    @property
    def user_request(self) -> str:
        return self.resolved_request or self.request

    @property
    def is_automation(self) -> bool:
        return self.intent in (None, AUTOMATION_INTENT)

    @property
    def plan_length(self) -> int:
        return len(self.skill_plan or [])

    def apply(self, update: Mapping[str, Any] | None) -> "WorkflowState":
        if not update:
            return self
        for key, value in update.items():
            if key in type(self).model_fields:
                setattr(self, key, value)
            else:
                self.scratch[key] = value
        return self

    def snapshot(self, *, max_chars: int = 200) -> dict[str, Any]:
        """Size-bounded view of the fields that matter when reading a trace."""
        failed = self.failed_step
        answer = self.answer or ""
        return {
            "status": self.status.value,
            "intent": self.intent,
            "plan_length": self.plan_length,
            "skill_cursor": self.skill_cursor,
            "results_count": len(self.skill_results),
            "failed_skill": failed.skill.value if failed else None,
            "failed_error": (failed.error or "")[:max_chars] if failed else None,
            "recovery_action": self.recovery_action.value if self.recovery_action else None,
            "step_retry_count": self.step_retry_count,
            "has_answer": bool(answer),
            "answer_length": len(answer),
            "error": (self.error or "")[:max_chars] or None,
        }


__all__ = [
    "AUTOMATION_INTENT",
    "ErrorKind",
    "RecoveryAction",
    "RunStatus",
    "TraceEntry",
    "WorkflowState",
]
