import pytest

from skillflow.core.config import PlannerSettings
from skillflow.orchestration.planner import (
    NEEDS_CONTEXT_MESSAGE,
    UNAVAILABLE_MESSAGE,
    PlanError,
    SkillPlanner,
    conversation_digest,
    prior_results_digest,
)
from skillflow.orchestration.planner_contract import PlanRefusal, enforce_plan_payload, is_placeholder_reason
from skillflow.orchestration.state import ErrorKind, RunStatus, WorkflowState
from skillflow.schemas.events import ProgressEventType
from skillflow.schemas.skills import RecoveryContext, SkillName, StepResult
from tests.helpers.stubs import EventCollector, ScriptedLLMBackend, plan_json, shell_step

ENV = {"os": "darwin", "home": "/Users/tester"}


def _planner(llm, **kwargs) -> SkillPlanner:
    return SkillPlanner(PlannerSettings(), llm, environment=ENV, **kwargs)


@pytest.mark.asyncio
async def test_plan_parses_fenced_array_and_normalizes_skill_names():
    raw = "```json\n" + plan_json(
        {"skill": "shell.run", "args": {"cmd": "mkdir", "argv": ["demo"], "cwd": "/tmp"}},
        {"skill": "ui.findAndClick", "args": {"label": "OK"}, "description": "confirm"},
    ) + "\n```"
    llm = ScriptedLLMBackend([raw])

    steps = await _planner(llm).plan("make a demo folder")

    assert [step.skill for step in steps] == [SkillName.SHELL_RUN, SkillName.UI_FIND_AND_CLICK]
    assert steps[0].args["cwd"] == "/tmp"
    assert steps[1].description == "confirm"
    assert llm.payloads[0]["system_instructions"].startswith("You are an automation planner")


@pytest.mark.asyncio
async def test_parse_failure_retries_once_with_same_prompt():
    llm = ScriptedLLMBackend(["Sorry, here you go!", plan_json(shell_step("ls"))])
    events = EventCollector()

    steps = await _planner(llm, progress_emitter=events).plan("list files")

    assert len(steps) == 1
    assert llm.calls == 2
    assert llm.prompts[0] == llm.prompts[1]
    assert events.types == [ProgressEventType.PLAN_START, ProgressEventType.PLAN_RETRY, ProgressEventType.PLAN_READY]


@pytest.mark.asyncio
async def test_second_parse_failure_raises_plan_error():
    llm = ScriptedLLMBackend(["nope", "still nope"])

    with pytest.raises(PlanError):
        await _planner(llm).plan("list files")
    assert llm.calls == 2


@pytest.mark.asyncio
async def test_real_refusal_becomes_human_readable_error_without_retry():
    llm = ScriptedLLMBackend(['{"error": "Formatting the system disk is destructive and not allowed"}'])

    with pytest.raises(PlanError) as excinfo:
        await _planner(llm).plan("format my disk")

    assert str(excinfo.value) == "Cannot automate this: Formatting the system disk is destructive and not allowed"
    assert llm.calls == 1


@pytest.mark.asyncio
async def test_placeholder_refusal_retries_with_enriched_prompt():
    llm = ScriptedLLMBackend(['{"error": "reason"}', plan_json(shell_step("cat", "notes.txt"))])

    steps = await _planner(llm).plan("open that file")

    assert steps[0].args["cmd"] == "cat"
    assert llm.calls == 2
    assert "You MUST output a valid JSON array" in llm.prompts[1]
    assert "You MUST output" not in llm.prompts[0]


@pytest.mark.asyncio
async def test_placeholder_refusal_twice_asks_for_more_context():
    llm = ScriptedLLMBackend(['{"error": ""}', '{"error": "reason"}'])

    with pytest.raises(PlanError) as excinfo:
        await _planner(llm).plan("do the thing")

    assert excinfo.value.message == NEEDS_CONTEXT_MESSAGE


@pytest.mark.asyncio
async def test_unavailable_backend_is_a_plan_error_without_generation():
    llm = ScriptedLLMBackend([plan_json(shell_step("ls"))], available=False)

    with pytest.raises(PlanError) as excinfo:
        await _planner(llm).plan("list files")

    assert excinfo.value.message == UNAVAILABLE_MESSAGE
    assert llm.calls == 0


@pytest.mark.asyncio
async def test_backend_exception_is_a_plan_error_without_retry():
    llm = ScriptedLLMBackend([ConnectionError("socket reset"), plan_json(shell_step("ls"))])

    with pytest.raises(PlanError) as excinfo:
        await _planner(llm).plan("list files")

    assert excinfo.value.message == UNAVAILABLE_MESSAGE
    assert excinfo.value.detail == "socket reset"
    assert llm.calls == 1


@pytest.mark.asyncio
async def test_invalid_entries_are_dropped_but_valid_ones_kept():
    raw = plan_json(
        {"skill": "teleport", "args": {}},
        shell_step("ls"),
        {"skill": "shell_run", "args": "not-an-object"},
    )
    llm = ScriptedLLMBackend([raw])

    steps = await _planner(llm).plan("list files")

    assert [step.args["cmd"] for step in steps] == ["ls"]


@pytest.mark.asyncio
async def test_plan_with_no_valid_steps_is_a_plan_error():
    llm = ScriptedLLMBackend([plan_json({"skill": "teleport", "args": {}})])

    with pytest.raises(PlanError):
        await _planner(llm).plan("beam me up")


def test_contract_accepts_steps_wrapper_and_single_step():
    wrapped = enforce_plan_payload({"steps": [shell_step("ls")]})
    single = enforce_plan_payload(shell_step("pwd"))

    assert [step.args["cmd"] for step in wrapped.steps] == ["ls"]
    assert [step.args["cmd"] for step in single.steps] == ["pwd"]


def test_contract_recognizes_refusals():
    outcome = enforce_plan_payload({"error": "placeholder"})

    assert isinstance(outcome, PlanRefusal)
    assert outcome.is_placeholder
    assert not is_placeholder_reason("The request needs administrator privileges")


def test_prompt_embeds_environment_recovery_results_and_conversation():
    planner = _planner(ScriptedLLMBackend())
    results = [
        StepResult(step_index=0, skill=SkillName.SHELL_RUN, ok=True, stdout="/Users/tester/a.txt\n/b\n/c\n/d"),
        StepResult(step_index=1, skill=SkillName.SHELL_RUN, ok=False, stdout="ignored"),
    ]
    recovery = RecoveryContext(
        failed_skill="shell_run",
        failed_step=2,
        failure_reason="permission denied",
        suggestion="use the Desktop",
        alternative_cwd="/Users/tester/Desktop",
    )
    conversation = [{"role": "user", "content": "make a folder"}, {"role": "assistant", "content": "Done."}]

    prompt = planner.build_prompt(
        "put the file there",
        recovery_context=recovery,
        prior_results=results,
        conversation=conversation,
    )

    assert "OS: darwin" in prompt
    assert "Home directory: /Users/tester" in prompt
    assert "RECOVERY CONTEXT" in prompt
    assert '- Use cwd: "/Users/tester/Desktop" instead' in prompt
    assert "- shell_run output: /Users/tester/a.txt; /b; /c" in prompt
    assert "ignored" not in prompt
    assert "User: make a folder" in prompt
    assert "Assistant: Done." in prompt


def test_digests_are_bounded():
    history = [{"role": "user", "content": f"turn {index} " + "x" * 400} for index in range(10)]

    lines = conversation_digest(history, turns=6)

    assert len(lines) == 6
    assert lines[0].startswith("User: turn 4")
    assert all(len(line) <= len("User: ") + 200 for line in lines)
    assert prior_results_digest([]) == []


@pytest.mark.asyncio
async def test_plan_stage_resets_cursor_and_clears_recovery_context():
    llm = ScriptedLLMBackend([plan_json(shell_step("ls"), shell_step("pwd"))])
    prior = StepResult(step_index=0, skill=SkillName.SHELL_RUN, ok=True, stdout="x")
    state = WorkflowState(
        request="list",
        skill_cursor=3,
        step_retry_count=2,
        skill_results=[prior],
        recovery_context=RecoveryContext(suggestion="try again"),
    )

    update = await _planner(llm).run(state)
    state.apply(update)

    assert state.skill_cursor == 0
    assert state.recovery_context is None
    assert state.step_retry_count == 0
    assert state.plan_length == 2
    assert state.results_offset == 1
    assert state.status is RunStatus.EXECUTING
    assert "RECOVERY CONTEXT" in llm.prompts[0]


@pytest.mark.asyncio
async def test_plan_stage_surfaces_plan_error_as_answer():
    llm = ScriptedLLMBackend(['{"error": "This would delete everything in your home folder"}'])
    events = EventCollector()

    update = await _planner(llm, progress_emitter=events).run(WorkflowState(request="rm -rf ~"))

    assert update["plan_error"].startswith("Cannot automate this:")
    assert update["answer"] == update["plan_error"]
    assert update["error_kind"] is ErrorKind.PLAN_ERROR
    assert update["status"] is RunStatus.FAILED
    assert events.types[-1] is ProgressEventType.PLAN_ERROR


@pytest.mark.asyncio
async def test_plan_stage_skips_non_automation_intents():
    llm = ScriptedLLMBackend()

    update = await _planner(llm).run(WorkflowState(request="hi", intent="greeting"))

    assert update == {}
    assert llm.calls == 0
