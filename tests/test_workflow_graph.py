import asyncio

import pytest

from skillflow.core.config import EngineSettings
from skillflow.orchestration.graph import (
    END,
    LOOP_LIMIT_MESSAGE,
    Computed,
    Static,
    WorkflowEngine,
)
from skillflow.orchestration.state import ErrorKind, RunStatus, WorkflowState


def _recording_stage(name: str, visited: list[str], update: dict | None = None):
    async def _stage(state: WorkflowState) -> dict:
        visited.append(name)
        return dict(update or {})

    return _stage


@pytest.mark.asyncio
async def test_static_edges_walk_stages_in_order():
    visited: list[str] = []
    engine = WorkflowEngine(
        stages={
            "first": _recording_stage("first", visited, {"answer": "one"}),
            "second": _recording_stage("second", visited, {"intent": "chat"}),
        },
        edges={"start": "first", "first": "second", "second": END},
    )

    state = await engine.execute(WorkflowState(request="hello"))

    assert visited == ["first", "second"]
    assert state.answer == "one"
    assert state.intent == "chat"
    assert [entry.stage for entry in state.trace] == ["first", "second"]
    assert all(entry.success for entry in state.trace)
    assert state.iterations == 2
    assert state.success is True
    assert state.elapsed_ms >= 0


@pytest.mark.asyncio
async def test_computed_edge_reads_state():
    visited: list[str] = []

    def route(state: WorkflowState) -> str:
        return "left" if state.intent == "go_left" else "right"

    engine = WorkflowEngine(
        stages={
            "decide": _recording_stage("decide", visited, {"intent": "go_left"}),
            "left": _recording_stage("left", visited),
            "right": _recording_stage("right", visited),
        },
        start="decide",
        edges={"decide": Computed(route, name="route"), "left": Static(END), "right": Static(END)},
    )

    await engine.execute(WorkflowState())

    assert visited == ["decide", "left"]


@pytest.mark.asyncio
async def test_unknown_fields_land_in_scratch_and_sync_stages_are_supported():
    engine = WorkflowEngine(stages={"only": lambda state: {"custom_key": 42}}, start="only")

    state = await engine.execute(WorkflowState())

    assert state.scratch == {"custom_key": 42}


@pytest.mark.asyncio
async def test_iteration_cap_halts_runaway_loop():
    calls = 0

    async def spin(state: WorkflowState) -> dict:
        nonlocal calls
        calls += 1
        return {}

    engine = WorkflowEngine(
        stages={"spin": spin},
        edges={"spin": "spin"},
        start="spin",
        settings=EngineSettings(max_iterations=5),
    )

    state = await engine.execute(WorkflowState())

    assert calls == 5
    assert state.iterations == 5
    assert state.error_kind is ErrorKind.ENGINE_LOOP_LIMIT
    assert state.error == LOOP_LIMIT_MESSAGE
    assert state.answer == LOOP_LIMIT_MESSAGE
    assert state.status is RunStatus.FAILED
    assert state.success is False
    assert state.trace[-1].success is False
    assert len(state.trace) == 6


@pytest.mark.asyncio
async def test_stage_exception_is_traced_and_stops_the_run():
    visited: list[str] = []

    async def explode(state: WorkflowState) -> dict:
        raise RuntimeError("boom")

    engine = WorkflowEngine(
        stages={"explode": explode, "after": _recording_stage("after", visited)},
        edges={"explode": "after"},
        start="explode",
    )

    state = await engine.execute(WorkflowState())

    assert visited == []
    assert state.error == "boom"
    assert state.error_kind is ErrorKind.STAGE_ERROR
    assert state.failed_stage == "explode"
    assert state.trace[0].success is False
    assert state.trace[0].error == "boom"
    assert state.answer


@pytest.mark.asyncio
async def test_trace_snapshot_is_size_bounded():
    long_answer = "x" * 5000

    engine = WorkflowEngine(
        stages={"fail": lambda state: {"error": long_answer}},
        start="fail",
        settings=EngineSettings(snapshot_max_chars=32),
    )

    state = await engine.execute(WorkflowState())

    assert len(state.trace[0].output["error"]) == 32


@pytest.mark.asyncio
async def test_parallel_batch_collects_failures_without_aborting_siblings():
    started: list[str] = []

    async def slow_ok(state: WorkflowState) -> dict:
        started.append("slow_ok")
        await asyncio.sleep(0)
        return {"resolved_request": "resolved"}

    async def failing(state: WorkflowState) -> dict:
        started.append("failing")
        raise ValueError("memory offline")

    async def other_ok(state: WorkflowState) -> dict:
        started.append("other_ok")
        return {"memories": [{"text": "remembered"}]}

    engine = WorkflowEngine(
        stages={"slow_ok": slow_ok, "failing": failing, "other_ok": other_ok},
        start="slow_ok",
    )

    state = await engine.execute_parallel(["slow_ok", "failing", "other_ok"], WorkflowState(request="r"))

    assert sorted(started) == ["failing", "other_ok", "slow_ok"]
    assert state.resolved_request == "resolved"
    assert state.memories == [{"text": "remembered"}]
    assert state.parallel_errors == [{"stage": "failing", "error": "memory offline"}]
    assert [entry.stage for entry in state.trace] == ["slow_ok", "failing", "other_ok"]
    assert all(entry.parallel for entry in state.trace)
    assert [entry.success for entry in state.trace] == [True, False, True]


@pytest.mark.asyncio
async def test_parallel_members_do_not_see_each_others_updates():
    seen: dict[str, str | None] = {}

    async def writer(state: WorkflowState) -> dict:
        return {"answer": "written"}

    async def reader(state: WorkflowState) -> dict:
        await asyncio.sleep(0)
        seen["answer"] = state.answer
        return {}

    engine = WorkflowEngine(stages={"writer": writer, "reader": reader}, start="batch")
    engine.add_parallel_stage("batch", ["writer", "reader"])

    state = await engine.execute(WorkflowState())

    assert seen["answer"] is None
    assert state.answer == "written"
    assert [entry.stage for entry in state.trace] == ["writer", "reader", "batch"]


@pytest.mark.asyncio
async def test_progress_callback_sees_start_and_completion_and_errors_are_ignored():
    calls: list[tuple[str, str]] = []

    async def callback(stage: str, state: WorkflowState, duration_ms: float, status: str) -> None:
        calls.append((stage, status))
        if status == "completed":
            raise RuntimeError("sink down")

    engine = WorkflowEngine(stages={"a": lambda s: {}, "b": lambda s: {}}, edges={"a": "b"}, start="a")

    state = await engine.execute(WorkflowState(), callback)

    assert calls == [("a", "started"), ("a", "completed"), ("b", "started"), ("b", "completed")]
    assert state.success is True


def test_engine_requires_a_start_stage():
    with pytest.raises(ValueError):
        WorkflowEngine(stages={"a": lambda s: {}})
