"""Automation graph wiring and the run-level entry point.

Stages::

    classify_intent -> gather_context -> plan_skills -> execute_command <-+
                                      |                  |                |
                                      +-> answer         +-> recover_skill

``execute_command`` loops on itself until the plan is exhausted or a step
fails. ``recover_skill`` routes back to ``execute_command`` (patch), to
``plan_skills`` (replan) or to the end of the run (question for the user).
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from ..core.config import Settings, get_settings
from ..core.logging import get_logger, run_context
from ..schemas.events import ProgressEmitter
from ..schemas.skills import BrowserSessionContext, RecoveryContext, StepResult
from ..services.command_client import CommandServiceClient
from ..services.llm import GenerationOptions, LLMBackend, backend_ready, resolve_llm_backend
from .dispatcher import CommandExecutor, SkillDispatcher
from .graph import END, Computed, StageProgressCallback, Static, WorkflowEngine
from .planner import SkillPlanner
from .recovery import RecoveryEngine
from .state import AUTOMATION_INTENT, RecoveryAction, RunStatus, WorkflowState

logger = get_logger(name=__name__)

CLASSIFY_INTENT = "classify_intent"
GATHER_CONTEXT = "gather_context"
RESOLVE_REFERENCES = "resolve_references"
RETRIEVE_MEMORY = "retrieve_memory"
PLAN_SKILLS = "plan_skills"
EXECUTE_COMMAND = "execute_command"
RECOVER_SKILL = "recover_skill"
ANSWER = "answer"

ANSWER_UNAVAILABLE_MESSAGE = "I can't answer right now because no language model is available."


class IntentClassifier(Protocol):
    async def classify(self, request: str, context: Mapping[str, Any]) -> str: ...


class ReferenceResolver(Protocol):
    async def resolve(self, request: str, history: Sequence[Mapping[str, str]]) -> str: ...


class MemoryRetriever(Protocol):
    async def retrieve(self, request: str, context: Mapping[str, Any]) -> list[dict[str, Any]]: ...


def route_after_context(state: WorkflowState) -> str:
    return PLAN_SKILLS if state.is_automation else ANSWER


def route_after_plan(state: WorkflowState) -> str:
    if state.plan_error or not state.skill_plan:
        return END
    return EXECUTE_COMMAND


def route_after_execute(state: WorkflowState) -> str:
    if state.failed_step is not None:
        return RECOVER_SKILL
    if state.status is RunStatus.SUCCEEDED or not state.is_automation:
        return END
    return EXECUTE_COMMAND


def route_after_recovery(state: WorkflowState) -> str:
    if state.recovery_action is RecoveryAction.AUTO_PATCH:
        return EXECUTE_COMMAND
    if state.recovery_action is RecoveryAction.REPLAN:
        return PLAN_SKILLS
    return END


def _reference_stage(resolver: ReferenceResolver):
    async def resolve_references(state: WorkflowState) -> dict[str, Any]:
        resolved = await resolver.resolve(state.request, state.conversation_history)
        return {"resolved_request": resolved or None}

    return resolve_references


def _memory_stage(retriever: MemoryRetriever):
    async def retrieve_memory(state: WorkflowState) -> dict[str, Any]:
        return {"memories": await retriever.retrieve(state.user_request, state.context)}

    return retrieve_memory


def build_automation_graph(
    planner: SkillPlanner,
    dispatcher: SkillDispatcher,
    recovery: RecoveryEngine,
    *,
    llm: LLMBackend | None = None,
    settings: Settings | None = None,
    intent_classifier: IntentClassifier | None = None,
    reference_resolver: ReferenceResolver | None = None,
    memory_retriever: MemoryRetriever | None = None,
) -> WorkflowEngine:
    settings = settings or get_settings()
    engine = WorkflowEngine(start=CLASSIFY_INTENT, settings=settings.engine)

    async def classify_intent(state: WorkflowState) -> dict[str, Any]:
        if state.intent is not None:
            return {}
        if intent_classifier is None:
            return {"intent": AUTOMATION_INTENT}
        intent = await intent_classifier.classify(state.request, state.context)
        logger.info("intent_classified", intent=intent, run_id=state.run_id)
        return {"intent": intent or AUTOMATION_INTENT}

    async def answer(state: WorkflowState) -> dict[str, Any]:
        if llm is None or not await backend_ready(llm):
            return {"answer": ANSWER_UNAVAILABLE_MESSAGE, "status": RunStatus.FAILED}
        try:
            text = await llm.generate_answer(
                state.user_request,
                {
                    "intent": state.intent,
                    "conversation_history": state.conversation_history,
                    "memories": state.memories,
                },
                GenerationOptions(max_tokens=settings.dispatcher.synthesis_max_tokens, temperature=0.3),
            )
        except Exception as exc:  # injected backends may raise anything
            logger.warning("answer_generation_failed", error=str(exc), error_type=type(exc).__name__)
            return {"answer": ANSWER_UNAVAILABLE_MESSAGE, "status": RunStatus.FAILED}
        return {"answer": text, "status": RunStatus.SUCCEEDED}

    engine.add_stage(CLASSIFY_INTENT, classify_intent)
    engine.add_stage(PLAN_SKILLS, planner.run)
    engine.add_stage(EXECUTE_COMMAND, dispatcher.dispatch_one)
    engine.add_stage(RECOVER_SKILL, recovery.recover)
    engine.add_stage(ANSWER, answer)

    members: list[str] = []
    if reference_resolver is not None:
        engine.add_stage(RESOLVE_REFERENCES, _reference_stage(reference_resolver))
        members.append(RESOLVE_REFERENCES)
    if memory_retriever is not None:
        engine.add_stage(RETRIEVE_MEMORY, _memory_stage(memory_retriever))
        members.append(RETRIEVE_MEMORY)

    if members:
        engine.add_parallel_stage(GATHER_CONTEXT, members)
        engine.add_edge(CLASSIFY_INTENT, Static(GATHER_CONTEXT))
        engine.add_edge(GATHER_CONTEXT, Computed(route_after_context, name="route_after_context"))
    else:
        engine.add_edge(CLASSIFY_INTENT, Computed(route_after_context, name="route_after_context"))

    engine.add_edge(PLAN_SKILLS, Computed(route_after_plan, name="route_after_plan"))
    engine.add_edge(EXECUTE_COMMAND, Computed(route_after_execute, name="route_after_execute"))
    engine.add_edge(RECOVER_SKILL, Computed(route_after_recovery, name="route_after_recovery"))
    engine.add_edge(ANSWER, Static(END))
    return engine


class AutomationRunner:
    """Runs one user request at a time through the automation graph.

    The LLM backend is resolved once per run. A command client is created per
    run unless one is injected, in which case the caller owns its lifetime.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        llm: LLMBackend | None = None,
        command_client: CommandExecutor | None = None,
        intent_classifier: IntentClassifier | None = None,
        reference_resolver: ReferenceResolver | None = None,
        memory_retriever: MemoryRetriever | None = None,
        progress_emitter: ProgressEmitter | None = None,
        stage_callback: StageProgressCallback | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._llm = llm
        self._command_client = command_client
        self._intent_classifier = intent_classifier
        self._reference_resolver = reference_resolver
        self._memory_retriever = memory_retriever
        self.progress_emitter = progress_emitter
        self.stage_callback = stage_callback

    async def run(
        self,
        request: str,
        *,
        context: Mapping[str, Any] | None = None,
        conversation_history: Sequence[Mapping[str, str]] | None = None,
        browser_session: BrowserSessionContext | None = None,
        prior_results: Sequence[StepResult] | None = None,
        intent: str | None = None,
        recovery_context: RecoveryContext | None = None,
    ) -> WorkflowState:
        state = WorkflowState(
            request=request,
            intent=intent,
            context=dict(context or {}),
            conversation_history=[dict(turn) for turn in conversation_history or []],
            browser_session=browser_session or BrowserSessionContext(),
            skill_results=list(prior_results or []),
            recovery_context=recovery_context,
        )
        return await self.execute(state)

    async def resume(self, previous: WorkflowState, reply: str) -> WorkflowState:
        """Continue a run that stopped on a question, using the user's reply."""
        history = [*previous.conversation_history, {"role": "user", "content": previous.request}]
        if previous.answer:
            history.append({"role": "assistant", "content": previous.answer})
        history.append({"role": "user", "content": reply})

        recovery_context = None
        pending = previous.pending_question
        if pending is not None:
            failed = pending.context
            recovery_context = RecoveryContext(
                failed_skill=failed.skill.value if failed else None,
                failed_step=failed.step_number if failed else None,
                failure_reason=failed.error if failed else None,
                suggestion=(
                    f'The user was asked: "{pending.question}" and replied: "{reply}". '
                    "Follow their choice and do not repeat steps that already succeeded."
                ),
            )
        logger.info("run_resume", previous_run_id=previous.run_id, has_question=pending is not None)
        return await self.run(
            previous.request,
            context=previous.context,
            conversation_history=history,
            browser_session=previous.browser_session,
            prior_results=previous.skill_results,
            intent=previous.intent or AUTOMATION_INTENT,
            recovery_context=recovery_context,
        )

    async def execute(self, state: WorkflowState) -> WorkflowState:
        llm = resolve_llm_backend(self.settings.llm, self._llm)
        logger.info("run_started", run_id=state.run_id, backend=llm.get_info().get("name"))

        owned_client: CommandServiceClient | None = None
        executor = self._command_client
        if executor is None:
            owned_client = CommandServiceClient(self.settings.command_service)
            executor = owned_client

        planner = SkillPlanner(self.settings.planner, llm, progress_emitter=self.progress_emitter)
        dispatcher = SkillDispatcher(
            self.settings.dispatcher,
            executor,
            llm,
            progress_emitter=self.progress_emitter,
        )
        recovery = RecoveryEngine(
            self.settings.recovery,
            llm,
            progress_emitter=self.progress_emitter,
            default_timeout_ms=self.settings.dispatcher.default_timeout_ms,
        )
        engine = build_automation_graph(
            planner,
            dispatcher,
            recovery,
            llm=llm,
            settings=self.settings,
            intent_classifier=self._intent_classifier,
            reference_resolver=self._reference_resolver,
            memory_retriever=self._memory_retriever,
        )
        try:
            with run_context(state.run_id):
                return await engine.execute(state, self.stage_callback)
        finally:
            if owned_client is not None:
                await owned_client.aclose()
            aclose = getattr(llm, "aclose", None)
            if aclose is not None and llm is not self._llm:
                await aclose()


__all__ = [
    "ANSWER",
    "AutomationRunner",
    "CLASSIFY_INTENT",
    "EXECUTE_COMMAND",
    "GATHER_CONTEXT",
    "IntentClassifier",
    "MemoryRetriever",
    "PLAN_SKILLS",
    "RECOVER_SKILL",
    "ReferenceResolver",
    "build_automation_graph",
    "route_after_context",
    "route_after_execute",
    "route_after_plan",
    "route_after_recovery",
]
