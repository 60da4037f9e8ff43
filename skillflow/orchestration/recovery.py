"""Recovery engine: turns a failed step into exactly one recovery decision.

Known failure shapes are matched first by ordered rules that never call the
model. Anything else is handed to the LLM, whose answer must validate as one
of the three decision shapes; when the model is unavailable or answers with
something else the engine asks the user instead of guessing.

Decisions are applied by :func:`apply_recovery`, which only builds the partial
state update. Routing on ``recovery_action`` happens in the workflow graph.
"""

from __future__ import annotations

import json
import os
import platform
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Callable, Literal, Mapping, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from ..core import metrics
from ..core.config import DispatcherSettings, RecoverySettings
from ..core.logging import get_logger
from ..schemas.events import ProgressEmitter, ProgressEvent, ProgressEventType
from ..schemas.skills import (
    BrowserSessionContext,
    PendingQuestion,
    RecoveryContext,
    SkillName,
    SkillStep,
    StepResult,
)
from ..services.llm import GenerationOptions, LLMBackend, backend_ready
from ..utils.json_extraction import extract_json_object
from .dispatcher import SEARCH_NO_RESULTS
from .sessions import SESSION_ARG
from .state import ErrorKind, RecoveryAction, RunStatus, WorkflowState

logger = get_logger(name=__name__)

DEFAULT_OPTIONS = ["Skip this step and continue", "Abort the task", "Try a different approach"]
SMART_TYPE_ACTION = "smart_type"
INDEX_SEARCH_TOOLS = frozenset({"mdfind", "locate", "plocate"})

RECOVERY_SYSTEM_PROMPT = """You are an automation recovery agent. A skill step failed.
Decide: AUTO_PATCH (fix args inline), REPLAN (rebuild plan), or ASK_USER (need human input).
Be conservative: prefer ASK_USER over guessing.

AUTO_PATCH: { "action": "AUTO_PATCH", "patchedArgs": {...}, "note": "one-line explanation" }
REPLAN: { "action": "REPLAN", "suggestion": "what to do differently", "alternativeCwd": "/path", "constraint": "what to avoid" }
ASK_USER: { "action": "ASK_USER", "question": "clear question", "options": ["option A", "option B"] }

Output ONLY valid JSON. No explanation, no markdown fences."""


class AutoPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: Literal["AUTO_PATCH"] = "AUTO_PATCH"
    patched_args: dict[str, Any] = Field(alias="patchedArgs")
    note: str = ""
    timeout_retry: bool = Field(default=False, exclude=True)

    @field_validator("patched_args")
    @classmethod
    def _require_patch(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("patchedArgs must not be empty")
        return value


class Replan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: Literal["REPLAN"] = "REPLAN"
    suggestion: str = Field(min_length=1)
    alternative_cwd: str | None = Field(default=None, alias="alternativeCwd")
    constraint: str | None = None
    fresh_session_id: str | None = Field(default=None, exclude=True)


class AskUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: Literal["ASK_USER"] = "ASK_USER"
    question: str = Field(min_length=1)
    options: list[str] = Field(default_factory=list)

    @field_validator("options", mode="before")
    @classmethod
    def _coerce_options(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value if str(item).strip()]


RecoveryDecision = Annotated[Union[AutoPatch, Replan, AskUser], Field(discriminator="action")]
_decision_adapter: TypeAdapter[AutoPatch | Replan | AskUser] = TypeAdapter(RecoveryDecision)


def parse_decision(raw: str | None) -> AutoPatch | Replan | AskUser | None:
    """Validate model output as one decision, or ``None`` if it is not one."""
    payload = extract_json_object(raw)
    if payload is None:
        return None
    action = str(payload.get("action") or "").strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return _decision_adapter.validate_python({**payload, "action": action})
    except ValidationError as exc:
        logger.warning("recovery_decision_invalid", action=action or None, errors=len(exc.errors()))
        return None


@dataclass(frozen=True, slots=True)
class FastPathMatch:
    rule: str
    decision: AutoPatch | Replan | AskUser
    occurrence_key: str | None = None


@dataclass(frozen=True, slots=True)
class FailureView:
    """Everything the rules look at, precomputed once per failure."""

    step: StepResult
    args: Mapping[str, Any]
    text: str
    retry_count: int
    occurrences: Mapping[str, int]

    @property
    def skill(self) -> SkillName:
        return self.step.skill

    @property
    def cmd(self) -> str:
        return str(self.args.get("cmd") or "")

    def seen(self, key: str) -> int:
        return self.occurrences.get(key, 0)


_NOT_IMPLEMENTED = re.compile(r"not (yet )?implemented|unknown skill|unsupported skill")
_INPUT_NOT_FOUND = re.compile(
    r"(no|could not find|couldn't find|cannot find|unable to find)( an?| the)? "
    r"(input|text ?field|text ?box|textarea|editable element)|input (element )?not found"
)
_SELECTOR_TIMEOUT = re.compile(r"waiting for (selector|locator)|selector .*time(d)? ?out|timeout .*selector")
_NAVIGATION_ERROR = re.compile(
    r"net::err_|err_name_not_resolved|err_connection|err_internet_disconnected|navigation failed|"
    r"dns lookup failed|getaddrinfo"
)
_SESSION_CLOSED = re.compile(
    r"target (page, context or browser )?(has been )?closed|session (closed|not found)|"
    r"browser has (been )?(closed|disconnected)|no such session"
)
_PERMISSION = re.compile(r"permission denied|read-only|operation not permitted|eacces|erofs")
_COMMAND_NOT_FOUND = re.compile(r"command not found|spawn \S+ enoent")
_TIMEOUT = re.compile(r"timed out|timeout")
_LOGIN_HINTS = ("login", "log in", "sign in", "signin", "sign up", "signup", "password", "authenticate")


def _looks_like_login(view: FailureView) -> bool:
    haystack = " ".join(
        part
        for part in (
            view.text,
            str(view.step.url or ""),
            str(view.args.get("url") or ""),
            json.dumps(view.step.result, default=str) if view.step.result is not None else "",
        )
        if part
    ).lower()
    return any(hint in haystack for hint in _LOGIN_HINTS)


def _package_manager() -> str:
    system = platform.system().lower()
    if system == "darwin":
        return "brew"
    if system == "windows":
        return "winget"
    return "apt"


def _search_term(args: Mapping[str, Any]) -> str:
    argv = [str(item) for item in args.get("argv") or []]
    for flag in ("-name", "-iname"):
        if flag in argv and argv.index(flag) + 1 < len(argv):
            return argv[argv.index(flag) + 1]
    non_flags = [item for item in argv if not item.startswith("-") and not item.startswith("/")]
    return non_flags[0] if non_flags else ""


def _search_dir(args: Mapping[str, Any], fallback: str) -> str:
    argv = [str(item) for item in args.get("argv") or []]
    if "-onlyin" in argv and argv.index("-onlyin") + 1 < len(argv):
        return argv[argv.index("-onlyin") + 1]
    positional = next((item for item in argv if item.startswith("/") or item.startswith("~")), None)
    return positional or str(args.get("cwd") or "") or fallback


class RecoveryEngine:
    """Decides how to continue after a failed step."""

    def __init__(
        self,
        settings: RecoverySettings,
        llm: LLMBackend | None = None,
        *,
        progress_emitter: ProgressEmitter | None = None,
        home: str | None = None,
        default_timeout_ms: int | None = None,
    ) -> None:
        self._settings = settings
        self._llm = llm
        self.progress_emitter = progress_emitter
        self._home = home or str(Path.home())
        # must match the timeout the dispatcher sends for steps without timeoutMs
        self._default_timeout_ms = default_timeout_ms or DispatcherSettings().default_timeout_ms
        self._rules: tuple[Callable[[FailureView], FastPathMatch | None], ...] = (
            self._rule_not_implemented,
            self._rule_input_not_found,
            self._rule_selector_timeout,
            self._rule_navigation_error,
            self._rule_session_closed,
            self._rule_permission_denied,
            self._rule_command_not_found,
            self._rule_search_no_results,
            self._rule_timeout,
        )

    async def _emit_progress(self, message: str, *, step: StepResult, metadata: dict[str, Any]) -> None:
        if self.progress_emitter is None:
            return
        event = ProgressEvent(
            event_type=ProgressEventType.RECOVERY_DECISION,
            message=message,
            step_index=step.step_index,
            skill=step.skill.value,
            description=step.description or None,
            error=step.error,
            metadata=metadata,
        )
        await self.progress_emitter(event)

    def fast_path(
        self,
        failed: StepResult,
        *,
        retry_count: int = 0,
        occurrences: Mapping[str, int] | None = None,
    ) -> FastPathMatch | None:
        """First matching deterministic rule, or ``None``."""
        view = FailureView(
            step=failed,
            args=failed.args,
            text=f"{failed.error or ''} {failed.stderr or ''}".lower(),
            retry_count=retry_count,
            occurrences=occurrences or {},
        )
        for rule in self._rules:
            match = rule(view)
            if match is not None:
                return match
        return None

    # ordered rules

    def _rule_not_implemented(self, view: FailureView) -> FastPathMatch | None:
        if not _NOT_IMPLEMENTED.search(view.text):
            return None
        return FastPathMatch(
            rule="not_implemented",
            decision=AskUser(
                question=(
                    f'The "{view.skill.value}" skill isn\'t available in this version. '
                    "Would you like me to try a different approach using only shell commands?"
                ),
                options=["Yes, try with shell commands only", "Cancel this task"],
            ),
        )

    def _rule_input_not_found(self, view: FailureView) -> FastPathMatch | None:
        if view.skill is not SkillName.BROWSER_ACT or not _INPUT_NOT_FOUND.search(view.text):
            return None
        if _looks_like_login(view):
            return FastPathMatch(
                rule="login_required",
                decision=AskUser(
                    question=(
                        "The page looks like a login or sign-up screen, so I can't find the field I need. "
                        "Please sign in in the browser window, then tell me to continue."
                    ),
                    options=["I've signed in, continue", "Cancel this task"],
                ),
            )
        key = "input_not_found"
        if view.seen(key) >= 1:
            return self._ask_browser_stuck(view, "rule_input_not_found_repeat")
        return FastPathMatch(rule="input_not_found", decision=self._smart_type_replan(view), occurrence_key=key)

    def _rule_selector_timeout(self, view: FailureView) -> FastPathMatch | None:
        if view.skill is not SkillName.BROWSER_ACT or not _SELECTOR_TIMEOUT.search(view.text):
            return None
        key = "selector_timeout"
        if view.seen(key) >= 1:
            return self._ask_browser_stuck(view, "rule_selector_timeout_repeat")
        return FastPathMatch(rule="selector_timeout", decision=self._smart_type_replan(view), occurrence_key=key)

    def _rule_navigation_error(self, view: FailureView) -> FastPathMatch | None:
        if view.skill is not SkillName.BROWSER_ACT or not _NAVIGATION_ERROR.search(view.text):
            return None
        url = view.args.get("url") or view.step.url or "the page"
        return FastPathMatch(
            rule="navigation_error",
            decision=AskUser(
                question=f"I couldn't reach {url}. Please check the address or your network connection.",
                options=["Try again", "Use a different URL", "Cancel"],
            ),
        )

    def _rule_session_closed(self, view: FailureView) -> FastPathMatch | None:
        if view.skill is not SkillName.BROWSER_ACT or not _SESSION_CLOSED.search(view.text):
            return None
        key = "session_closed"
        if view.seen(key) >= 1:
            return self._ask_browser_stuck(view, "rule_session_closed_repeat")
        fresh = f"session-{uuid4().hex[:8]}"
        return FastPathMatch(
            rule="session_closed",
            occurrence_key=key,
            decision=Replan(
                suggestion=(
                    f'The browser session was closed. Start a new browser session with sessionId "{fresh}", '
                    "navigate to the page again, and continue from there."
                ),
                constraint=f'Every browser_act step must use sessionId "{fresh}".',
                fresh_session_id=fresh,
            ),
        )

    def _rule_permission_denied(self, view: FailureView) -> FastPathMatch | None:
        if view.skill is not SkillName.SHELL_RUN or not _PERMISSION.search(view.text):
            return None
        fallback = self._settings.fallback_directory
        expanded = fallback.replace("~", self._home, 1) if fallback.startswith("~") else fallback
        location = view.args.get("cwd") or "that location"
        if Path(view.cmd).name == "mkdir":
            question = (
                f"I don't have permission to create a folder there ({location}). "
                f"Would you like me to create it in {expanded} instead?"
            )
        else:
            question = (
                f"I don't have permission to write to {location}. "
                f"Would you like me to use {expanded} instead?"
            )
        return FastPathMatch(
            rule="permission_denied",
            decision=AskUser(
                question=question,
                options=[f"Yes, use {expanded}", "Choose a different location", "Cancel"],
            ),
        )

    def _rule_command_not_found(self, view: FailureView) -> FastPathMatch | None:
        if view.skill is not SkillName.SHELL_RUN or not _COMMAND_NOT_FOUND.search(view.text):
            return None
        command = view.cmd or "the command"
        manager = _package_manager()
        return FastPathMatch(
            rule="command_not_found",
            decision=AskUser(
                question=(
                    f'The command "{command}" wasn\'t found on your system. '
                    "Would you like me to try installing it first?"
                ),
                options=[f"Install {command} via {manager}", "Skip this step", "Cancel"],
            ),
        )

    def _rule_search_no_results(self, view: FailureView) -> FastPathMatch | None:
        if SEARCH_NO_RESULTS not in view.text:
            return None
        key = SEARCH_NO_RESULTS
        attempt = view.seen(key)
        term = _search_term(view.args) or "the requested name"
        fallback = self._settings.fallback_directory
        directory = _search_dir(view.args, fallback)
        tool = Path(view.cmd).name or "search"

        if attempt == 0:
            if tool in INDEX_SEARCH_TOOLS:
                suggestion = (
                    f'{tool} returned no results for "{term}"; the index may not include this file yet. '
                    f'Use find instead: find "{directory}" -iname "*{term}*" -maxdepth 5'
                )
            else:
                suggestion = (
                    f'{tool} returned no results for "{term}" in "{directory}". Run a full directory scan '
                    f'with find: find "{directory}" -iname "*{term}*" -maxdepth 5'
                )
            return FastPathMatch(
                rule="search_no_results",
                occurrence_key=key,
                decision=Replan(
                    suggestion=suggestion,
                    constraint=f'Search in "{directory}" using find, not an index tool. Set timeoutMs: 30000.',
                ),
            )
        if attempt == 1:
            return FastPathMatch(
                rule="search_no_results_widen",
                occurrence_key=key,
                decision=Replan(
                    suggestion=(
                        f'The search found nothing in "{directory}" for "{term}". Widen it to the whole home '
                        f'directory: find "{self._home}" -iname "*{term}*" -maxdepth 6'
                    ),
                    constraint="Search all of the home directory using find. Set timeoutMs: 60000.",
                ),
            )
        return FastPathMatch(
            rule="search_no_results_exhausted",
            occurrence_key=key,
            decision=AskUser(
                question=f'I searched your home directory but couldn\'t find "{term}". Where should I look?',
                options=["Search a specific folder", "Try a different name", "Cancel"],
            ),
        )

    def _rule_timeout(self, view: FailureView) -> FastPathMatch | None:
        if not _TIMEOUT.search(view.text):
            return None
        multipliers = self._settings.timeout_multipliers
        attempt = view.retry_count
        if attempt >= len(multipliers):
            return FastPathMatch(
                rule="timeout_exhausted",
                decision=AskUser(
                    question=(
                        f'"{view.cmd or view.skill.value}" timed out after {len(multipliers) + 1} attempts. '
                        "Would you like to skip it or try a different approach?"
                    ),
                    options=["Skip this step and continue", "Try a different approach", "Cancel"],
                ),
            )
        current = int(view.args.get("timeoutMs") or self._default_timeout_ms)
        # the step already carries a patched timeout on retries; recover the original
        original = current if attempt == 0 else round(current / multipliers[attempt - 1])
        patched = original * multipliers[attempt]
        return FastPathMatch(
            rule="timeout",
            decision=AutoPatch(
                patched_args={"timeoutMs": patched},
                note=f"Timeout retry {attempt + 1}: increasing timeoutMs from {current}ms to {patched}ms",
                timeout_retry=True,
            ),
        )

    def _smart_type_replan(self, view: FailureView) -> Replan:
        session_id = view.args.get(SESSION_ARG)
        text = view.args.get("text")
        session_hint = f' with sessionId "{session_id}"' if session_id else ""
        text_hint = f' and text "{text}"' if text else ""
        return Replan(
            suggestion=(
                f'The input element could not be located by selector. Use browser_act with action '
                f'"{SMART_TYPE_ACTION}"{session_hint}{text_hint}; it discovers the input field itself.'
            ),
            constraint="Do not pass a CSS selector for this input; do not navigate again.",
        )

    @staticmethod
    def _ask_browser_stuck(view: FailureView, rule: str) -> FastPathMatch:
        return FastPathMatch(
            rule=rule,
            decision=AskUser(
                question=(
                    f"I still couldn't complete the browser step ({view.step.description or view.skill.value}): "
                    f"{view.step.error}. How would you like to proceed?"
                ),
                options=["Let me do it manually, then continue", "Try a different approach", "Cancel"],
            ),
        )

    # llm path

    def build_prompt(self, state: WorkflowState, failed: StepResult) -> str:
        plan = state.skill_plan or []
        completed = "\n".join(
            f"  - Step {result.step_number}: {result.skill.value}" for result in state.skill_results if result.ok
        ) or "  (none)"
        remaining = "\n".join(
            f"  Step {index + 1}: {step.skill.value} - {step.description or json.dumps(step.args)}"
            for index, step in enumerate(plan)
            if index > state.skill_cursor
        ) or "  (none)"
        return f"""Original user request: "{state.user_request}"

Failed step:
  Step number: {failed.step_number}
  Skill: {failed.skill.value}
  Args: {json.dumps(failed.args, indent=2, default=str)}
  Error: {failed.error}
  Exit code: {failed.exit_code if failed.exit_code is not None else 'N/A'}
  Stderr: {failed.stderr or '(none)'}

Completed steps so far:
{completed}

Remaining steps (not yet executed):
{remaining}

OS: {platform.system().lower() or os.name}
Home: {self._home}

Decide the recovery strategy."""

    async def _llm_decision(self, state: WorkflowState, failed: StepResult) -> AutoPatch | Replan | AskUser | None:
        if self._llm is None or not await backend_ready(self._llm):
            logger.warning("recovery_backend_unavailable")
            return None
        try:
            raw = await self._llm.generate_answer(
                self.build_prompt(state, failed),
                {"system_instructions": RECOVERY_SYSTEM_PROMPT, "intent": "command_automate"},
                GenerationOptions(max_tokens=self._settings.max_tokens, temperature=self._settings.temperature),
            )
        except Exception as exc:  # injected backends may raise anything
            logger.warning("recovery_llm_failed", error=str(exc), error_type=type(exc).__name__)
            return None
        logger.debug("recovery_raw_decision", preview=(raw or "")[:300])
        return parse_decision(raw)

    async def decide(self, state: WorkflowState) -> tuple[AutoPatch | Replan | AskUser, str, str | None]:
        """Return ``(decision, source, occurrence_key)`` for ``state.failed_step``."""
        failed = state.failed_step
        if failed is None:
            raise ValueError("decide() requires a failed step")
        match = self.fast_path(
            failed,
            retry_count=state.step_retry_count,
            occurrences=state.recovery_occurrences,
        )
        if match is not None:
            logger.info("recovery_fast_path", rule=match.rule, action=match.decision.action, step=failed.step_number)
            return match.decision, "fast_path", match.occurrence_key

        decision = await self._llm_decision(state, failed)
        if decision is not None:
            return decision, "llm", None

        return (
            AskUser(
                question=(
                    f'Step {failed.step_number} ({failed.skill.value}) failed: "{failed.error}". '
                    "What should I do?"
                ),
                options=list(DEFAULT_OPTIONS),
            ),
            "fallback",
            None,
        )

    async def recover(self, state: WorkflowState) -> dict[str, Any]:
        """Recover stage: decide, then reduce the decision into a state update."""
        failed = state.failed_step
        if failed is None:
            logger.warning("recovery_without_failed_step", run_id=state.run_id)
            return {"recovery_action": None}

        decision, source, occurrence_key = await self.decide(state)
        metrics.record_recovery_decision(action=decision.action.lower(), source=source)
        await self._emit_progress(
            f"Recovery: {decision.action}",
            step=failed,
            metadata={"action": decision.action, "source": source},
        )
        return apply_recovery(
            state,
            decision,
            occurrence_key=occurrence_key,
            exhausted=source == "fallback",
        )


def apply_recovery(
    state: WorkflowState,
    decision: AutoPatch | Replan | AskUser,
    *,
    occurrence_key: str | None = None,
    exhausted: bool = False,
) -> dict[str, Any]:
    """Build the state update for ``decision`` without touching ``state``."""
    failed = state.failed_step
    occurrences = dict(state.recovery_occurrences)
    if occurrence_key:
        occurrences[occurrence_key] = occurrences.get(occurrence_key, 0) + 1

    if isinstance(decision, AutoPatch):
        plan: list[SkillStep] = list(state.skill_plan or [])
        cursor = state.skill_cursor
        if cursor < len(plan):
            plan[cursor] = plan[cursor].with_args(decision.patched_args)
        logger.info("recovery_auto_patch", note=decision.note, step=cursor + 1)
        return {
            "recovery_action": RecoveryAction.AUTO_PATCH,
            "skill_plan": plan,
            "failed_step": None,
            "step_retry_count": state.step_retry_count + 1 if decision.timeout_retry else 0,
            "recovery_note": decision.note,
            "recovery_occurrences": occurrences,
            "status": RunStatus.EXECUTING,
        }

    if isinstance(decision, Replan):
        logger.info("recovery_replan", suggestion=decision.suggestion)
        update: dict[str, Any] = {
            "recovery_action": RecoveryAction.REPLAN,
            "recovery_context": RecoveryContext(
                failed_skill=failed.skill.value if failed else None,
                failed_step=failed.step_number if failed else None,
                failure_reason=failed.error if failed else None,
                suggestion=decision.suggestion,
                alternative_cwd=decision.alternative_cwd,
                constraint=decision.constraint,
            ),
            "recovery_note": decision.suggestion,
            "failed_step": None,
            "skill_plan": None,
            "skill_cursor": 0,
            "step_retry_count": 0,
            "recovery_occurrences": occurrences,
            "status": RunStatus.PLANNING,
        }
        if decision.fresh_session_id:
            update["browser_session"] = BrowserSessionContext(active_session_id=decision.fresh_session_id)
        return update

    options = decision.options or list(DEFAULT_OPTIONS)
    question = PendingQuestion(question=decision.question, options=options, context=failed)
    logger.info("recovery_ask_user", question=decision.question, options=len(options))
    update = {
        "recovery_action": RecoveryAction.ASK_USER,
        "pending_question": question,
        "answer": question.render(),
        "command_executed": False,
        "failed_step": None,
        "step_retry_count": 0,
        "recovery_occurrences": occurrences,
        "status": RunStatus.AWAITING_USER,
    }
    if exhausted:
        update["error_kind"] = ErrorKind.RECOVERY_EXHAUSTED
    return update


__all__ = [
    "AskUser",
    "AutoPatch",
    "DEFAULT_OPTIONS",
    "FastPathMatch",
    "RECOVERY_SYSTEM_PROMPT",
    "RecoveryDecision",
    "RecoveryEngine",
    "Replan",
    "apply_recovery",
    "parse_decision",
]
