import pytest

from skillflow.core.config import EngineSettings, Settings
from skillflow.orchestration.dispatcher import SEARCH_NO_RESULTS_ERROR
from skillflow.orchestration.planner import UNAVAILABLE_MESSAGE
from skillflow.orchestration.state import ErrorKind, RecoveryAction, RunStatus, WorkflowState
from skillflow.orchestration.workflow import (
    ANSWER,
    ANSWER_UNAVAILABLE_MESSAGE,
    EXECUTE_COMMAND,
    RECOVER_SKILL,
    AutomationRunner,
    route_after_execute,
    route_after_plan,
    route_after_recovery,
)
from skillflow.schemas.events import ProgressEventType
from tests.helpers.stubs import EventCollector, ScriptedLLMBackend, StubCommandService, plan_json, shell_step


def _runner(llm, executor, **kwargs) -> AutomationRunner:
    settings = kwargs.pop("settings", None) or Settings(environment="test")
    return AutomationRunner(settings, llm=llm, command_client=executor, **kwargs)


def _stages(state: WorkflowState) -> list[str]:
    return [entry.stage for entry in state.trace]


class StaticIntent:
    def __init__(self, intent: str) -> None:
        self.intent = intent

    async def classify(self, request, context):
        return self.intent


class FixedResolver:
    async def resolve(self, request, history):
        return "open /tmp/report.pdf"


class BrokenMemory:
    async def retrieve(self, request, context):
        raise ConnectionError("memory store offline")


@pytest.mark.asyncio
async def test_every_step_succeeds():
    llm = ScriptedLLMBackend([plan_json(shell_step("mkdir", "demo", cwd="/tmp"), shell_step("ls", cwd="/tmp/demo"))])
    executor = StubCommandService([{"ok": True, "stdout": ""}, {"ok": True, "stdout": "demo\n"}])
    events = EventCollector()

    state = await _runner(llm, executor, progress_emitter=events).run("make a demo folder in tmp")

    assert state.status is RunStatus.SUCCEEDED
    assert state.command_executed is True
    assert state.answer == "Completed 2/2 skill steps successfully."
    assert [result.ok for result in state.skill_results] == [True, True]
    assert _stages(state) == [
        "classify_intent",
        "plan_skills",
        "execute_command",
        "execute_command",
        "execute_command",
    ]
    assert events.types == [
        ProgressEventType.PLAN_START,
        ProgressEventType.PLAN_READY,
        ProgressEventType.STEP_START,
        ProgressEventType.STEP_DONE,
        ProgressEventType.STEP_START,
        ProgressEventType.STEP_DONE,
        ProgressEventType.ALL_DONE,
    ]
    assert state.success is True


@pytest.mark.asyncio
async def test_permission_error_pauses_for_the_user():
    llm = ScriptedLLMBackend([plan_json(shell_step("mkdir", "/System/demo"))])
    executor = StubCommandService(
        [{"ok": False, "stderr": "mkdir: /System/demo: Permission denied", "exitCode": 1}]
    )

    state = await _runner(llm, executor).run("create a demo folder in /System")

    assert state.status is RunStatus.AWAITING_USER
    assert state.recovery_action is RecoveryAction.ASK_USER
    assert state.pending_question.options[0].startswith("Yes, use ")
    assert state.pending_question.options[0].endswith("Desktop")
    assert state.answer == state.pending_question.render()
    assert state.command_executed is False
    assert state.error_kind is None
    assert llm.calls == 1
    assert _stages(state)[-1] == RECOVER_SKILL


@pytest.mark.asyncio
async def test_empty_search_replans_with_find_and_succeeds():
    llm = ScriptedLLMBackend(
        [
            plan_json(shell_step("mdfind", "report.pdf")),
            plan_json(shell_step("find", "/Users/tester", "-iname", "*report.pdf*", timeoutMs=30_000)),
        ]
    )
    executor = StubCommandService([{"ok": True, "stdout": ""}, {"ok": True, "stdout": "/Users/tester/report.pdf\n"}])

    state = await _runner(llm, executor).run("find my report.pdf")

    assert state.status is RunStatus.SUCCEEDED
    assert state.answer == "Completed 1/1 skill steps successfully."
    assert state.skill_results[0].error == SEARCH_NO_RESULTS_ERROR
    assert state.skill_results[1].ok is True
    assert state.recovery_occurrences == {"search_no_results": 1}
    assert state.recovery_context is None
    replan_prompt = llm.prompts[1]
    assert "RECOVERY CONTEXT" in replan_prompt
    assert "search_no_results" in replan_prompt
    assert "Use find instead" in replan_prompt
    assert _stages(state) == [
        "classify_intent",
        "plan_skills",
        "execute_command",
        "recover_skill",
        "plan_skills",
        "execute_command",
        "execute_command",
    ]


@pytest.mark.asyncio
async def test_timeout_is_retried_with_a_longer_timeout():
    llm = ScriptedLLMBackend([plan_json(shell_step("npm", "install"))])
    executor = StubCommandService([TimeoutError("Command timed out after 10000ms"), {"ok": True, "stdout": "added"}])

    state = await _runner(llm, executor).run("install dependencies")

    assert state.status is RunStatus.SUCCEEDED
    assert executor.timeouts() == [10_000, 20_000]
    assert state.step_retry_count == 0
    assert llm.calls == 1


@pytest.mark.asyncio
async def test_timeout_retries_grow_from_the_configured_dispatch_default():
    llm = ScriptedLLMBackend([plan_json(shell_step("npm", "install"))])
    executor = StubCommandService(
        [TimeoutError("Command timed out"), TimeoutError("Command timed out"), {"ok": True, "stdout": "added"}]
    )
    settings = Settings(environment="test", dispatcher={"default_timeout_ms": 30_000})

    state = await _runner(llm, executor, settings=settings).run("install dependencies")

    assert state.status is RunStatus.SUCCEEDED
    assert executor.timeouts() == [30_000, 60_000, 90_000]


@pytest.mark.asyncio
async def test_failing_recovery_model_pauses_for_the_user():
    llm = ScriptedLLMBackend([plan_json(shell_step("node", "build.js")), ConnectionError("socket reset")])
    executor = StubCommandService([{"ok": False, "stderr": "SyntaxError: Unexpected token }", "exitCode": 1}])

    state = await _runner(llm, executor).run("build the project")

    assert state.status is RunStatus.AWAITING_USER
    assert state.error_kind is ErrorKind.RECOVERY_EXHAUSTED
    assert state.failed_stage is None
    assert _stages(state)[-1] == RECOVER_SKILL


@pytest.mark.asyncio
async def test_failing_planner_model_reports_unavailable():
    llm = ScriptedLLMBackend([RuntimeError("model crashed")])
    executor = StubCommandService()

    state = await _runner(llm, executor).run("list my files")

    assert state.status is RunStatus.FAILED
    assert state.error_kind is ErrorKind.PLAN_ERROR
    assert state.answer == UNAVAILABLE_MESSAGE
    assert executor.calls == []


@pytest.mark.asyncio
async def test_failing_answer_model_reports_unavailable():
    llm = ScriptedLLMBackend([RuntimeError("model crashed")])
    executor = StubCommandService()

    state = await _runner(llm, executor, intent_classifier=StaticIntent("greeting")).run("hi")

    assert state.status is RunStatus.FAILED
    assert state.answer == ANSWER_UNAVAILABLE_MESSAGE
    assert state.error_kind is not ErrorKind.STAGE_ERROR


@pytest.mark.asyncio
async def test_refused_plan_ends_the_run_with_an_explanation():
    llm = ScriptedLLMBackend(['{"error": "That would erase your disk, which I will not do"}'])
    executor = StubCommandService()

    state = await _runner(llm, executor).run("erase my disk")

    assert state.status is RunStatus.FAILED
    assert state.error_kind is ErrorKind.PLAN_ERROR
    assert state.answer == "Cannot automate this: That would erase your disk, which I will not do"
    assert executor.calls == []
    assert _stages(state) == ["classify_intent", "plan_skills"]


@pytest.mark.asyncio
async def test_resume_after_question_replans_with_the_reply():
    llm = ScriptedLLMBackend(
        [
            plan_json(shell_step("mkdir", "/System/demo")),
            plan_json(shell_step("mkdir", "demo", cwd="/Users/tester/Desktop")),
        ]
    )
    executor = StubCommandService(
        [{"ok": False, "stderr": "mkdir: /System/demo: Permission denied", "exitCode": 1}, {"ok": True}]
    )
    runner = _runner(llm, executor)

    paused = await runner.run("create a demo folder in /System")
    resumed = await runner.resume(paused, "Yes, use the Desktop")

    assert resumed.status is RunStatus.SUCCEEDED
    assert resumed.answer == "Completed 1/1 skill steps successfully."
    assert len(resumed.skill_results) == 2
    prompt = llm.prompts[1]
    assert 'replied: "Yes, use the Desktop"' in prompt
    assert "User: Yes, use the Desktop" in prompt
    assert "- Failure reason: mkdir: /System/demo: Permission denied" in prompt
    assert executor.calls[1]["args"]["cwd"] == "/Users/tester/Desktop"


@pytest.mark.asyncio
async def test_non_automation_request_is_answered_directly():
    llm = ScriptedLLMBackend(["Hello there!"])
    executor = StubCommandService()

    state = await _runner(llm, executor, intent_classifier=StaticIntent("greeting")).run("hi")

    assert state.answer == "Hello there!"
    assert state.status is RunStatus.SUCCEEDED
    assert _stages(state) == ["classify_intent", ANSWER]
    assert executor.calls == []


@pytest.mark.asyncio
async def test_context_gathering_runs_in_parallel_and_tolerates_failures():
    llm = ScriptedLLMBackend([plan_json(shell_step("open", "/tmp/report.pdf"))])
    executor = StubCommandService()

    state = await _runner(
        llm,
        executor,
        reference_resolver=FixedResolver(),
        memory_retriever=BrokenMemory(),
    ).run("open it")

    assert state.status is RunStatus.SUCCEEDED
    assert 'User request: "open /tmp/report.pdf"' in llm.prompts[0]
    assert state.parallel_errors == [{"stage": "retrieve_memory", "error": "memory store offline"}]
    assert _stages(state)[:4] == ["classify_intent", "resolve_references", "retrieve_memory", "gather_context"]


@pytest.mark.asyncio
async def test_long_plan_hits_the_iteration_cap():
    llm = ScriptedLLMBackend([plan_json(*[shell_step("echo", str(index)) for index in range(10)])])
    settings = Settings(environment="test", engine=EngineSettings(max_iterations=5))

    state = await _runner(llm, StubCommandService(), settings=settings).run("echo a lot")

    assert state.status is RunStatus.FAILED
    assert state.error_kind is ErrorKind.ENGINE_LOOP_LIMIT
    assert state.iterations == 5
    assert state.success is False


def test_routing_functions():
    failed = WorkflowState(failed_step={"step_index": 0, "skill": "shell_run"})
    done = WorkflowState(status=RunStatus.SUCCEEDED)
    running = WorkflowState(status=RunStatus.EXECUTING)

    assert route_after_execute(failed) == RECOVER_SKILL
    assert route_after_execute(done) == "end"
    assert route_after_execute(running) == EXECUTE_COMMAND
    assert route_after_plan(WorkflowState(plan_error="nope")) == "end"
    assert route_after_recovery(WorkflowState(recovery_action=RecoveryAction.AUTO_PATCH)) == EXECUTE_COMMAND
    assert route_after_recovery(WorkflowState(recovery_action=RecoveryAction.REPLAN)) == "plan_skills"
    assert route_after_recovery(WorkflowState(recovery_action=RecoveryAction.ASK_USER)) == "end"
