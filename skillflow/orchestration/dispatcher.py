from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence
from uuid import uuid4

from ..core import metrics
from ..core.config import DispatcherSettings
from ..core.logging import get_logger
from ..schemas.events import ProgressEmitter, ProgressEvent, ProgressEventType
from ..schemas.skills import BrowserSessionContext, SkillName, SkillStep, StepResult
from ..services.llm import GenerationOptions, LLMBackend
from .sessions import SESSION_ARG
from .state import RunStatus, WorkflowState
from .substitution import substitute_args, substitute_plan

logger = get_logger(name=__name__)

SEARCH_NO_RESULTS = "search_no_results"
SEARCH_NO_RESULTS_ERROR = f"{SEARCH_NO_RESULTS}: search returned no results for the given query"
SHELL_INTERPRETERS = frozenset({"bash", "sh", "zsh"})

SYNTHESIS_ANSWER_VAR = "synthesisAnswer"
SYNTHESIS_FILE_VAR = "synthesisFilePath"
SYNTHESIS_INSTRUCTIONS = (
    "You are a research assistant. The user asked you to compare or summarize information gathered by "
    "earlier automation steps. You have been given the output of each step. Provide a clear, structured "
    "comparison or summary that directly answers the user's request. Use headings for each source if "
    "comparing. Be concise and factual."
)


class CommandExecutor(Protocol):
    async def execute(
        self,
        skill: str,
        args: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> Mapping[str, Any]: ...


def _command_name(value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    return Path(text.split()[0]).name


def is_search_command(args: Mapping[str, Any], search_commands: Sequence[str]) -> bool:
    """True for a listed search tool, or a shell script whose body invokes one."""
    commands = set(search_commands)
    name = _command_name(args.get("cmd"))
    if name in commands:
        return True
    if name not in SHELL_INTERPRETERS:
        return False
    argv = args.get("argv")
    if not isinstance(argv, list):
        return False
    pattern = re.compile(r"\b(" + "|".join(re.escape(command) for command in commands) + r")\b")
    return any(isinstance(item, str) and pattern.search(item) for item in argv)


def _exception_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


def _result_field(raw: Mapping[str, Any], key: str) -> Any:
    value = raw.get(key)
    if value is None and isinstance(raw.get("result"), Mapping):
        value = raw["result"].get(key)
    return value


class SkillDispatcher:
    """Executes exactly one pending plan step per engine pass."""

    def __init__(
        self,
        settings: DispatcherSettings,
        executor: CommandExecutor,
        llm: LLMBackend | None = None,
        *,
        progress_emitter: ProgressEmitter | None = None,
    ) -> None:
        self._settings = settings
        self._executor = executor
        self._llm = llm
        self.progress_emitter = progress_emitter

    async def _emit_progress(
        self,
        event_type: ProgressEventType,
        message: str,
        *,
        step_index: int | None = None,
        total_steps: int | None = None,
        step: SkillStep | None = None,
        stdout: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.progress_emitter is None:
            return
        preview = self._settings.output_preview_chars
        event = ProgressEvent(
            event_type=event_type,
            message=message,
            step_index=step_index,
            total_steps=total_steps,
            skill=step.skill.value if step else None,
            description=step.label if step else None,
            stdout=stdout[:preview] if stdout else None,
            error=error,
            metadata=metadata or {},
        )
        await self.progress_emitter(event)

    async def dispatch_one(self, state: WorkflowState) -> dict[str, Any]:
        """Execute stage: one step, or the completion summary once the plan is exhausted."""
        if not state.is_automation:
            return {}
        plan = state.skill_plan or []
        cursor = state.skill_cursor
        if cursor >= len(plan):
            return await self._complete(state, plan)

        step = plan[cursor]
        await self._emit_progress(
            ProgressEventType.STEP_START,
            f"Step {cursor + 1}/{len(plan)}: {step.label}",
            step_index=cursor,
            total_steps=len(plan),
            step=step,
        )
        logger.info("step_dispatch", step=cursor + 1, total=len(plan), skill=step.skill.value)

        if step.skill is SkillName.SYNTHESIZE:
            return await self._synthesize(state, plan, cursor, step)

        args = substitute_args(step.args, state.synthesis_variables)
        result = await self._execute(cursor, step, args)
        return await self._settle(state, plan, cursor, step, result)

    async def _execute(self, cursor: int, step: SkillStep, args: dict[str, Any]) -> StepResult:
        timeout_ms = args.get("timeoutMs") or self._settings.default_timeout_ms
        search = step.skill is SkillName.SHELL_RUN and is_search_command(args, self._settings.search_commands)
        started = time.perf_counter()
        try:
            response = await self._executor.execute(step.skill.value, args, timeout_ms=int(timeout_ms))
        except Exception as exc:
            message = _exception_message(exc)
            elapsed = (time.perf_counter() - started) * 1000
            if search and "code 1" in message:
                logger.debug("step_search_exit_no_results", step=cursor + 1)
                metrics.record_soft_failure(skill=step.skill.value, tag=SEARCH_NO_RESULTS)
                message = SEARCH_NO_RESULTS_ERROR
            else:
                logger.error("step_dispatch_error", step=cursor + 1, skill=step.skill.value, error=message)
            return StepResult(
                step_index=cursor,
                skill=step.skill,
                args=args,
                description=step.description,
                ok=False,
                error=message,
                execution_time_ms=elapsed,
            )

        raw: Mapping[str, Any] = response
        if isinstance(raw.get("data"), Mapping):
            raw = raw["data"]
        ok = raw.get("ok")
        if ok is None:
            ok = raw.get("success")
        exit_code = raw.get("exitCode")
        result = StepResult(
            step_index=cursor,
            skill=step.skill,
            args=args,
            description=step.description,
            ok=bool(ok) if ok is not None else False,
            stdout=raw.get("stdout") or None,
            stderr=raw.get("stderr") or None,
            exit_code=exit_code if isinstance(exit_code, int) else None,
            result=raw.get("result"),
            url=_result_field(raw, "url"),
            error=raw.get("error") or None,
            execution_time_ms=(
                raw.get("executionTimeMs") or raw.get("executionTime") or (time.perf_counter() - started) * 1000
            ),
        )

        no_output = not (result.stdout or "").strip()
        if search and no_output and (result.ok or result.exit_code == 1):
            metrics.record_soft_failure(skill=step.skill.value, tag=SEARCH_NO_RESULTS)
            logger.info("step_soft_failure", step=cursor + 1, tag=SEARCH_NO_RESULTS, cmd=args.get("cmd"))
            result = result.model_copy(update={"ok": False, "error": SEARCH_NO_RESULTS_ERROR})
        elif not result.ok and not result.error:
            detail = (result.stderr or "").strip() or f"exit code {result.exit_code}"
            result = result.model_copy(update={"error": detail})
        return result

    async def _settle(
        self,
        state: WorkflowState,
        plan: list[SkillStep],
        cursor: int,
        step: SkillStep,
        result: StepResult,
    ) -> dict[str, Any]:
        results = [*state.skill_results, result]

        if not result.ok and not step.optional:
            metrics.record_step_dispatch(skill=step.skill.value, outcome="failed")
            logger.warning("step_failed", step=cursor + 1, skill=step.skill.value, error=result.error)
            await self._emit_progress(
                ProgressEventType.STEP_FAILED,
                f"Step {cursor + 1} failed: {result.error}",
                step_index=cursor,
                total_steps=len(plan),
                step=step,
                error=result.error,
                metadata={"stderr": result.stderr} if result.stderr else None,
            )
            return {
                "skill_results": results,
                "failed_step": result,
                "command_executed": False,
                "status": RunStatus.RECOVERING,
            }

        if result.ok:
            metrics.record_step_dispatch(skill=step.skill.value, outcome="ok")
        else:
            metrics.record_step_dispatch(skill=step.skill.value, outcome="skipped")
            logger.info("optional_step_skipped", step=cursor + 1, error=result.error)

        update: dict[str, Any] = {
            "skill_results": results,
            "skill_cursor": cursor + 1,
            "failed_step": None,
            "step_retry_count": 0,
            "status": RunStatus.EXECUTING,
        }
        if result.ok and step.skill is SkillName.BROWSER_ACT:
            update["browser_session"] = self._next_session(state.browser_session, result)
        await self._emit_progress(
            ProgressEventType.STEP_DONE,
            f"Step {cursor + 1} done: {step.label}",
            step_index=cursor,
            total_steps=len(plan),
            step=step,
            stdout=result.stdout,
            metadata={"exit_code": result.exit_code, "optional_failure": not result.ok},
        )
        return update

    @staticmethod
    def _next_session(current: BrowserSessionContext, result: StepResult) -> BrowserSessionContext:
        session_id = result.args.get(SESSION_ARG)
        if not session_id and isinstance(result.result, Mapping):
            session_id = result.result.get(SESSION_ARG) or result.result.get("session_id")
        url = result.url or result.args.get("url") or current.active_url
        return BrowserSessionContext(
            active_session_id=str(session_id) if session_id else current.active_session_id,
            active_url=url,
        )

    async def _synthesize(
        self,
        state: WorkflowState,
        plan: list[SkillStep],
        cursor: int,
        step: SkillStep,
    ) -> dict[str, Any]:
        args = substitute_args(step.args, state.synthesis_variables)
        sources = self._synthesis_sources(state.skill_results)
        request = str(args.get("prompt") or state.user_request)
        started = time.perf_counter()

        if self._llm is None or not sources:
            if self._llm is None:
                error = "No LLM backend available for synthesis"
            else:
                error = "No content collected for synthesis"
            failed = StepResult(
                step_index=cursor,
                skill=step.skill,
                args=args,
                description=step.description,
                ok=False,
                error=error,
            )
            return await self._settle(state, plan, cursor, step, failed)

        async def _on_token(token: str) -> None:
            await self._emit_progress(
                ProgressEventType.SYNTHESIS_TOKEN,
                token,
                step_index=cursor,
                total_steps=len(plan),
                step=step,
            )

        query = f"{request}\n\nHere is the content collected from each source:\n\n{sources}"
        try:
            answer = await self._llm.generate_answer(
                query,
                {"system_instructions": SYNTHESIS_INSTRUCTIONS, "query": query, "intent": "command_automate"},
                GenerationOptions(
                    max_tokens=self._settings.synthesis_max_tokens,
                    temperature=self._settings.synthesis_temperature,
                ),
                _on_token,
            )
        except Exception as exc:
            logger.error("synthesis_failed", step=cursor + 1, error=_exception_message(exc))
            failed = StepResult(
                step_index=cursor,
                skill=step.skill,
                args=args,
                description=step.description,
                ok=False,
                error=f"Synthesis failed: {_exception_message(exc)}",
            )
            return await self._settle(state, plan, cursor, step, failed)

        ephemeral_path = self._settings.synthesis_dir / f"synthesis-{state.run_id}-{uuid4().hex[:8]}.md"
        try:
            await asyncio.to_thread(_write_text, ephemeral_path, answer)
        except OSError as exc:
            logger.warning("synthesis_ephemeral_write_failed", path=str(ephemeral_path), error=str(exc))
        file_path = str(ephemeral_path)
        save_to = args.get("saveToFile")
        if save_to:
            target = Path(str(save_to)).expanduser()
            try:
                await asyncio.to_thread(_write_text, target, answer)
                file_path = str(target)
            except OSError as exc:
                logger.warning("synthesis_save_failed", path=str(target), error=str(exc))

        variables = {**state.synthesis_variables, SYNTHESIS_ANSWER_VAR: answer, SYNTHESIS_FILE_VAR: file_path}
        result = StepResult(
            step_index=cursor,
            skill=step.skill,
            args=args,
            description=step.description,
            ok=True,
            stdout=answer,
            result={"filePath": file_path, "ephemeralPath": str(ephemeral_path)},
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )
        logger.info("synthesis_complete", step=cursor + 1, chars=len(answer), path=file_path)
        update = await self._settle(state, plan, cursor, step, result)
        update["synthesis_variables"] = variables
        update["skill_plan"] = substitute_plan(plan, variables, start=cursor + 1)
        return update

    @staticmethod
    def _synthesis_sources(results: Sequence[StepResult]) -> str:
        blocks: list[str] = []
        for result in results:
            if not result.ok:
                continue
            text = (result.stdout or "").strip()
            if not text and result.result is not None:
                text = str(result.result).strip()
            if not text:
                continue
            heading = result.description or result.url or result.skill.value
            blocks.append(f"### Step {result.step_number}: {heading}\n{text}")
        return "\n\n".join(blocks)

    async def _complete(self, state: WorkflowState, plan: list[SkillStep]) -> dict[str, Any]:
        current = state.skill_results[state.results_offset :]
        completed = sum(1 for result in current if result.ok)
        summary = f"Completed {completed}/{len(plan)} skill steps successfully."
        last_browser = next(
            (
                result
                for result in reversed(current)
                if result.ok and result.skill is SkillName.BROWSER_ACT
            ),
            None,
        )
        if last_browser is not None:
            title = _result_field(last_browser.result, "title") if isinstance(last_browser.result, Mapping) else None
            url = last_browser.url or state.browser_session.active_url
            if title and url:
                summary += f" Final page: {title} ({url})."
            elif url:
                summary += f" Final page: {url}."
        synthesis = state.synthesis_variables.get(SYNTHESIS_ANSWER_VAR)
        answer = f"{synthesis}\n\n{summary}" if synthesis else summary

        logger.info("plan_complete", completed=completed, total=len(plan), run_id=state.run_id)
        await self._emit_progress(
            ProgressEventType.ALL_DONE,
            summary,
            total_steps=len(plan),
            metadata={"completed": completed},
        )
        return {
            "answer": answer,
            "command_executed": True,
            "failed_step": None,
            "status": RunStatus.SUCCEEDED,
        }


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


__all__ = [
    "CommandExecutor",
    "SEARCH_NO_RESULTS",
    "SEARCH_NO_RESULTS_ERROR",
    "SYNTHESIS_ANSWER_VAR",
    "SYNTHESIS_FILE_VAR",
    "SkillDispatcher",
    "is_search_command",
]
