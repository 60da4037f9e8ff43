from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SkillName(str, Enum):
    """Primitives understood by the command-execution service."""

    SHELL_RUN = "shell_run"
    BROWSER_ACT = "browser_act"
    UI_FIND_AND_CLICK = "ui_find_and_click"
    UI_TYPE_TEXT = "ui_type_text"
    UI_WAIT_FOR = "ui_wait_for"
    SYNTHESIZE = "synthesize"


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_skill_name(value: Any) -> str:
    """Map LLM spellings such as ``shell.run`` or ``ui.findAndClick`` onto enum values."""
    text = str(value or "").strip()
    text = _CAMEL_BOUNDARY.sub("_", text)
    return re.sub(r"[.\-\s]+", "_", text).lower()


class SkillStep(BaseModel):
    """One structured action of a plan. Patching produces a new instance."""

    model_config = ConfigDict(frozen=True)

    skill: SkillName
    args: dict[str, Any] = Field(default_factory=dict)
    optional: bool = False
    description: str = ""

    @field_validator("skill", mode="before")
    @classmethod
    def _coerce_skill(cls, value: Any) -> Any:
        if isinstance(value, SkillName):
            return value
        return normalize_skill_name(value)

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("args must be an object")
        return dict(value)

    @property
    def label(self) -> str:
        return self.description or self.skill.value

    def with_args(self, patch: dict[str, Any]) -> "SkillStep":
        return self.model_copy(update={"args": {**self.args, **patch}})


SkillPlan = list[SkillStep]


class StepResult(BaseModel):
    """Outcome of one dispatch attempt. Never overwritten once appended."""

    step_index: int = Field(ge=0)
    skill: SkillName
    args: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    ok: bool = False
    stdout: str | None = None
    stderr: str | None = None
    exit_code: int | None = None
    result: Any = None
    url: str | None = None
    error: str | None = None
    execution_time_ms: float | None = None

    @property
    def step_number(self) -> int:
        return self.step_index + 1


class BrowserSessionContext(BaseModel):
    active_session_id: str | None = None
    active_url: str | None = None

    @property
    def is_active(self) -> bool:
        return bool(self.active_session_id)


class RecoveryContext(BaseModel):
    """Guidance handed to the planner when a plan is rebuilt after a failure."""

    failed_skill: str | None = None
    failed_step: int | None = None
    failure_reason: str | None = None
    suggestion: str = ""
    alternative_cwd: str | None = None
    constraint: str | None = None


class PendingQuestion(BaseModel):
    question: str
    options: list[str] = Field(default_factory=list)
    context: StepResult | None = None

    def render(self) -> str:
        if not self.options:
            return self.question
        lines = [f"{index}. {option}" for index, option in enumerate(self.options, start=1)]
        return self.question + "\n\n" + "\n".join(lines)


__all__ = [
    "BrowserSessionContext",
    "PendingQuestion",
    "RecoveryContext",
    "SkillName",
    "SkillPlan",
    "SkillStep",
    "StepResult",
    "normalize_skill_name",
]
