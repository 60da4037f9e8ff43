from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import ValidationError

from ..core.logging import get_logger
from ..schemas.skills import SkillStep

__all__ = [
    "PlanContractViolation",
    "PlanRefusal",
    "ValidatedPlan",
    "enforce_plan_payload",
    "is_placeholder_reason",
]

logger = get_logger(name=__name__)

_PLACEHOLDER_REASONS = {"reason", "placeholder", "explain why it cannot be done", "error"}
_MIN_REASON_LENGTH = 10


class PlanContractViolation(RuntimeError):
    """Raised when a planner payload contains no usable step."""


@dataclass(slots=True)
class PlanRefusal:
    """The model declined to plan and returned ``{"error": ...}`` instead."""

    reason: str

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_reason(self.reason)


@dataclass(slots=True)
class ValidatedPlan:
    steps: list[SkillStep]
    dropped: list[dict[str, Any]] = field(default_factory=list)


def is_placeholder_reason(reason: str | None) -> bool:
    text = (reason or "").strip()
    if not text:
        return True
    return text.lower() in _PLACEHOLDER_REASONS or len(text) < _MIN_REASON_LENGTH


def _step_entries(payload: Any) -> list[Any] | None:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        steps = payload.get("steps") or payload.get("plan")
        if isinstance(steps, list):
            return steps
        if "skill" in payload:
            return [payload]
    return None


def enforce_plan_payload(payload: Any) -> ValidatedPlan | PlanRefusal:
    """Validate a decoded LLM payload, repairing what can be repaired.

    Accepts a bare array, ``{"steps": [...]}`` or a single step object.
    Entries that fail validation are dropped and reported; a payload that
    keeps no step at all is a contract violation.
    """
    if isinstance(payload, Mapping) and "error" in payload and "skill" not in payload and not _step_entries(payload):
        return PlanRefusal(reason=str(payload.get("error") or ""))

    entries = _step_entries(payload)
    if entries is None:
        raise PlanContractViolation("Planner payload is neither a step list nor a step object")

    steps: list[SkillStep] = []
    dropped: list[dict[str, Any]] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            dropped.append({"index": index, "reason": "not_an_object"})
            continue
        candidate = dict(entry)
        if not candidate.get("description"):
            candidate["description"] = str(candidate.get("skill") or "")
        try:
            steps.append(SkillStep.model_validate(candidate))
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            dropped.append({"index": index, "reason": f"{location}:{first.get('type', 'validation')}"})

    if dropped:
        logger.warning("planner_contract_repaired", dropped=dropped, kept=len(steps))
    if not steps:
        raise PlanContractViolation("Planner payload contained no valid skill steps")
    return ValidatedPlan(steps=steps, dropped=dropped)
