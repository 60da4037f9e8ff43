from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..core import metrics
from ..core.config import PlannerSettings
from ..core.logging import get_logger
from ..schemas.events import ProgressEmitter, ProgressEvent, ProgressEventType
from ..schemas.skills import BrowserSessionContext, RecoveryContext, SkillStep, StepResult
from ..services.llm import GenerationOptions, LLMBackend, backend_ready
from ..utils.json_extraction import extract_json_value
from .planner_contract import PlanContractViolation, PlanRefusal, enforce_plan_payload
from .sessions import normalize_session_reuse
from .state import ErrorKind, RunStatus, WorkflowState

logger = get_logger(name=__name__)

SKILL_SYSTEM_PROMPT = """You are an automation planner. Convert the user's request into an ordered list of skill steps.

Available skills: shell_run, browser_act, ui_find_and_click, ui_type_text, ui_wait_for, synthesize

shell_run|args:{cmd,argv[],cwd?,timeoutMs?,dryRun?,stdin?}
browser_act|args:{action,url?,selector?,text?,sessionId?,timeoutMs?,headless?}
ui_find_and_click|args:{label,app?,confidence?,timeoutMs?}
ui_type_text|args:{text,delayMs?}|tokens:{ENTER}{TAB}{ESC}{CMD+K}{CMD+C}{CMD+V}{BACKSPACE}
ui_wait_for|args:{condition,value?,timeoutMs?,pollIntervalMs?}|conditions:textIncludes,textRegex,appIsActive,titleIncludes,urlIncludes,changed
synthesize|args:{prompt,saveToFile?}|summarizes earlier step outputs; later steps may use {{synthesisAnswer}} and {{synthesisFilePath}}

Each step is {"skill": ..., "args": {...}, "optional": false, "description": "..."}.
Policy: no sudo/su/passwd. argv is string[] with no shell interpolation. Always specify cwd when creating files.
Output ONLY a valid JSON array. No explanation, no markdown fences.
If the request cannot be safely automated, output: { "error": "explain why it cannot be done" }"""

ENRICHED_SUFFIX = (
    "\n\nIMPORTANT: You MUST output a valid JSON array of skill steps. If the request references a file "
    "or path from a previous step, use the PREVIOUS STEP RESULTS above to resolve it. Do NOT output "
    '{ "error": ... } unless the task is truly impossible.'
)

NEEDS_CONTEXT_MESSAGE = (
    "I need more context to complete this. Try being more specific (e.g. include the full file path)."
)
UNPARSEABLE_MESSAGE = "I could not turn this request into a sequence of automation steps. Please rephrase it."
UNAVAILABLE_MESSAGE = "The language model is unavailable, so I cannot plan this automation right now."


class PlanError(RuntimeError):
    """Planner failure carrying a message that is safe to show to the user."""

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


def describe_environment() -> dict[str, str]:
    return {"os": platform.system().lower() or os.name, "home": str(Path.home())}


def prior_results_digest(results: Sequence[StepResult], *, max_lines: int = 3) -> list[str]:
    """One line per successful step with output, used to resolve "that file" style references."""
    lines: list[str] = []
    for result in results:
        stdout = (result.stdout or "").strip()
        if not result.ok or not stdout:
            continue
        head = "; ".join(stdout.splitlines()[:max_lines])
        lines.append(f"- {result.skill.value} output: {head}")
    return lines


def conversation_digest(
    history: Sequence[Mapping[str, str]],
    *,
    turns: int = 6,
    max_chars: int = 200,
) -> list[str]:
    if turns <= 0:
        return []
    lines: list[str] = []
    for message in list(history)[-turns:]:
        content = str(message.get("content") or "").strip()
        if not content:
            continue
        speaker = "User" if message.get("role") == "user" else "Assistant"
        lines.append(f"{speaker}: {content[:max_chars]}")
    return lines


def _recovery_block(context: RecoveryContext) -> str:
    lines = [
        "",
        "",
        "RECOVERY CONTEXT (previous attempt failed):",
        f"- Failed step: {context.failed_skill or 'unknown'} (step {context.failed_step if context.failed_step is not None else '?'})",
        f"- Failure reason: {context.failure_reason or 'unknown'}",
        f"- Suggestion: {context.suggestion or 'none'}",
        f"- Constraint: {context.constraint or 'none'}",
    ]
    if context.alternative_cwd:
        lines.append(f'- Use cwd: "{context.alternative_cwd}" instead')
    lines.append("Adjust the plan to avoid the same failure.")
    return "\n".join(lines)


class SkillPlanner:
    """Turns an automation request into a validated list of :class:`SkillStep`."""

    def __init__(
        self,
        settings: PlannerSettings,
        llm: LLMBackend,
        *,
        progress_emitter: ProgressEmitter | None = None,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings
        self._llm = llm
        self.progress_emitter = progress_emitter
        self._environment = dict(environment or describe_environment())

    async def _emit_progress(
        self,
        event_type: ProgressEventType,
        message: str,
        *,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        total_steps: int | None = None,
    ) -> None:
        if self.progress_emitter is None:
            return
        event = ProgressEvent(
            event_type=event_type,
            message=message,
            error=error,
            total_steps=total_steps,
            metadata=metadata or {},
        )
        await self.progress_emitter(event)

    def build_prompt(
        self,
        request: str,
        *,
        recovery_context: RecoveryContext | None = None,
        prior_results: Sequence[StepResult] = (),
        conversation: Sequence[Mapping[str, str]] = (),
        browser_session: BrowserSessionContext | None = None,
    ) -> str:
        parts = [
            "TASK: Convert the following user request into a JSON skill plan.",
            f"OS: {self._environment.get('os', 'unknown')}",
            f"Home directory: {self._environment.get('home', '~')}",
            f'User request: "{request}"',
        ]
        prompt = "\n".join(parts)
        if recovery_context is not None:
            prompt += _recovery_block(recovery_context)

        result_lines = prior_results_digest(prior_results, max_lines=self._settings.prior_result_lines)
        if result_lines:
            prompt += (
                '\n\nPREVIOUS STEP RESULTS (use these to resolve references like "that file", "it", "the result"):\n'
                + "\n".join(result_lines)
            )

        turn_lines = conversation_digest(conversation, turns=self._settings.conversation_turns)
        if turn_lines:
            prompt += (
                '\n\nRECENT CONVERSATION (use this to resolve references like "that file", "it", "the result"):\n'
                + "\n".join(turn_lines)
            )

        if browser_session is not None and browser_session.is_active:
            prompt += (
                "\n\nACTIVE BROWSER SESSION:\n"
                f'- sessionId: "{browser_session.active_session_id}"\n'
                f"- current URL: {browser_session.active_url or 'unknown'}\n"
                "Reuse this exact sessionId for every browser_act step. Do NOT navigate again if the page "
                "is already on the right site."
            )
        return prompt

    async def plan(
        self,
        request: str,
        *,
        recovery_context: RecoveryContext | None = None,
        prior_results: Sequence[StepResult] = (),
        conversation: Sequence[Mapping[str, str]] = (),
        browser_session: BrowserSessionContext | None = None,
    ) -> list[SkillStep]:
        """Return a non-empty plan or raise :class:`PlanError`."""
        await self._emit_progress(ProgressEventType.PLAN_START, "Generating skill plan...")

        if not await backend_ready(self._llm):
            logger.warning("planner_backend_unavailable", backend=self._llm.get_info().get("name"))
            raise PlanError(UNAVAILABLE_MESSAGE)

        prompt = self.build_prompt(
            request,
            recovery_context=recovery_context,
            prior_results=prior_results,
            conversation=conversation,
            browser_session=browser_session,
        )

        payload = await self._generate(prompt)
        if payload is None:
            logger.warning("planner_parse_failed_retrying")
            metrics.record_plan_outcome(outcome="retry")
            await self._emit_progress(ProgressEventType.PLAN_RETRY, "Retrying plan generation...")
            payload = await self._generate(prompt)
        if payload is None:
            raise PlanError(UNPARSEABLE_MESSAGE, detail="unparseable planner output")

        outcome = self._validate(payload)
        if isinstance(outcome, PlanRefusal):
            if not outcome.is_placeholder:
                raise PlanError(f"Cannot automate this: {outcome.reason}", detail=outcome.reason)
            logger.warning("planner_placeholder_refusal_retrying", reason=outcome.reason)
            metrics.record_plan_outcome(outcome="retry")
            await self._emit_progress(ProgressEventType.PLAN_RETRY, "Retrying with more context...")
            retry_payload = await self._generate(prompt + ENRICHED_SUFFIX)
            try:
                outcome = self._validate(retry_payload) if retry_payload is not None else None
            except PlanError:
                outcome = None
            if not isinstance(outcome, list):
                raise PlanError(NEEDS_CONTEXT_MESSAGE, detail="placeholder refusal")

        steps = outcome
        if browser_session is not None:
            steps = normalize_session_reuse(steps, browser_session, aliases=self._settings.domain_aliases)

        metrics.record_plan_outcome(outcome="ready", steps=len(steps))
        logger.info("plan_ready", steps=len(steps), skills=[step.skill.value for step in steps])
        await self._emit_progress(
            ProgressEventType.PLAN_READY,
            f"Plan ready: {len(steps)} steps",
            total_steps=len(steps),
            metadata={
                "steps": [
                    {"index": index, "skill": step.skill.value, "description": step.label, "args": step.args}
                    for index, step in enumerate(steps)
                ]
            },
        )
        return steps

    async def _generate(self, prompt: str) -> Any | None:
        try:
            raw = await self._llm.generate_answer(
                prompt,
                {"system_instructions": SKILL_SYSTEM_PROMPT, "intent": "command_automate"},
                GenerationOptions(
                    max_tokens=self._settings.max_output_tokens,
                    temperature=self._settings.temperature,
                ),
            )
        except Exception as exc:  # injected backends may raise anything
            logger.warning("planner_llm_failed", error=str(exc), error_type=type(exc).__name__)
            raise PlanError(UNAVAILABLE_MESSAGE, detail=str(exc)) from exc
        logger.debug("planner_raw_output", preview=(raw or "")[:300])
        return extract_json_value(raw)

    @staticmethod
    def _validate(payload: Any) -> list[SkillStep] | PlanRefusal:
        try:
            outcome = enforce_plan_payload(payload)
        except PlanContractViolation as exc:
            raise PlanError(UNPARSEABLE_MESSAGE, detail=str(exc)) from exc
        if isinstance(outcome, PlanRefusal):
            return outcome
        return outcome.steps

    async def run(self, state: WorkflowState) -> dict[str, Any]:
        """Plan stage: returns the partial update the engine merges."""
        if not state.is_automation:
            return {}
        try:
            steps = await self.plan(
                state.user_request,
                recovery_context=state.recovery_context,
                prior_results=state.skill_results,
                conversation=state.conversation_history,
                browser_session=state.browser_session,
            )
        except PlanError as exc:
            metrics.record_plan_outcome(outcome="error")
            logger.warning("plan_error", message=exc.message, detail=exc.detail)
            await self._emit_progress(ProgressEventType.PLAN_ERROR, exc.message, error=exc.message)
            return {
                "plan_error": exc.message,
                "skill_plan": None,
                "answer": exc.message,
                "command_executed": False,
                "error": exc.message,
                "error_kind": ErrorKind.PLAN_ERROR,
                "status": RunStatus.FAILED,
            }
        return {
            "skill_plan": steps,
            "skill_cursor": 0,
            "recovery_context": None,
            "recovery_note": None,
            "step_retry_count": 0,
            "failed_step": None,
            "plan_error": None,
            "results_offset": len(state.skill_results),
            "status": RunStatus.EXECUTING,
        }


__all__ = [
    "PlanError",
    "SKILL_SYSTEM_PROMPT",
    "SkillPlanner",
    "conversation_digest",
    "describe_environment",
    "prior_results_digest",
]
