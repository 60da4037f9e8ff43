"""Workflow engine: walks named stages along static or computed edges.

The engine owns the :class:`WorkflowState` for the duration of a run. Each
pass invokes exactly one stage, merges the partial update it returns, records
a trace entry and asks the routing table for the next stage. Routing edges are
either :class:`Static` (a fixed stage name) or :class:`Computed` (a pure
function of the state), so branching stays in one place and can be tested
without running any stage bodies.

A declared list of stages can also run as a parallel batch: every member sees
its own copy of the state, failures are collected per member, and successful
updates are merged in declaration order once all members have finished.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from ..core import metrics
from ..core.config import EngineSettings
from ..core.logging import get_logger
from .state import ErrorKind, RunStatus, TraceEntry, WorkflowState

logger = get_logger(name=__name__)

END = "end"

StageResult = Union[Mapping[str, Any], None]
Stage = Callable[[WorkflowState], Union[Awaitable[StageResult], StageResult]]
StageProgressCallback = Callable[[str, WorkflowState, float, str], Union[Awaitable[None], None]]

LOOP_LIMIT_MESSAGE = "This request needed more steps than allowed, so I stopped. Please try a simpler request."
STAGE_ERROR_MESSAGE = "Something went wrong while handling this request. Please try again."


@dataclass(frozen=True, slots=True)
class Static:
    target: str


@dataclass(frozen=True, slots=True)
class Computed:
    route: Callable[[WorkflowState], str]
    name: str = ""


Edge = Union[Static, Computed]


class EngineLoopLimit(RuntimeError):
    """Raised internally when routing exceeds the iteration cap."""

    def __init__(self, stage: str, limit: int) -> None:
        super().__init__(f"Iteration limit of {limit} reached at stage '{stage}'")
        self.stage = stage
        self.limit = limit


def as_edge(value: Edge | str | Callable[[WorkflowState], str]) -> Edge:
    if isinstance(value, (Static, Computed)):
        return value
    if isinstance(value, str):
        return Static(value)
    if callable(value):
        return Computed(value, name=getattr(value, "__name__", ""))
    raise TypeError(f"Unsupported edge definition: {value!r}")


@dataclass
class _ParallelOutcome:
    stage: str
    success: bool
    update: StageResult
    trace: TraceEntry
    error: str | None = None


@dataclass
class WorkflowEngine:
    stages: dict[str, Stage] = field(default_factory=dict)
    edges: dict[str, Edge] = field(default_factory=dict)
    start: str | None = None
    settings: EngineSettings = field(default_factory=EngineSettings)

    def __post_init__(self) -> None:
        self.edges = {name: as_edge(edge) for name, edge in self.edges.items()}
        if self.start is None:
            start_edge = self.edges.pop("start", None)
            if isinstance(start_edge, Static):
                self.start = start_edge.target
        if self.start is None:
            raise ValueError("WorkflowEngine requires a start stage")

    def add_stage(self, name: str, stage: Stage) -> None:
        self.stages[name] = stage

    def add_edge(self, source: str, target: Edge | str | Callable[[WorkflowState], str]) -> None:
        self.edges[source] = as_edge(target)

    def add_parallel_stage(self, name: str, members: Sequence[str]) -> None:
        """Register ``name`` as a stage that runs ``members`` as one parallel batch."""
        member_names = tuple(members)

        async def _batch(state: WorkflowState) -> dict[str, Any]:
            merged, traces, errors = await self._gather(member_names, state, None)
            merged["trace"] = [*state.trace, *traces]
            merged["parallel_errors"] = [*state.parallel_errors, *errors]
            return merged

        self.stages[name] = _batch

    def next_stage(self, current: str, state: WorkflowState) -> str:
        edge = self.edges.get(current)
        if edge is None:
            return END
        if isinstance(edge, Static):
            return edge.target
        target = edge.route(state)
        logger.debug("engine_route", source=current, target=target, router=edge.name or None)
        return target or END

    async def execute(
        self,
        initial_state: WorkflowState,
        progress_callback: StageProgressCallback | None = None,
    ) -> WorkflowState:
        state = initial_state
        started = time.perf_counter()
        current = self.start or END
        iterations = 0
        max_chars = self.settings.snapshot_max_chars

        while current != END:
            if iterations >= self.settings.max_iterations:
                self._abort_loop(state, EngineLoopLimit(current, self.settings.max_iterations))
                break
            iterations += 1

            await self._notify(progress_callback, current, state, 0.0, "started")
            input_snapshot = state.snapshot(max_chars=max_chars)
            stage_started = time.perf_counter()
            try:
                stage = self.stages.get(current)
                if stage is None:
                    raise KeyError(f"Stage not found: {current}")
                update = await _invoke(stage, state)
            except Exception as exc:
                duration = time.perf_counter() - stage_started
                logger.exception("engine_stage_failed", stage=current, error=str(exc))
                state.trace.append(
                    TraceEntry(
                        stage=current,
                        duration_ms=duration * 1000,
                        input=input_snapshot,
                        success=False,
                        error=str(exc),
                    )
                )
                metrics.observe_stage(stage=current, latency=duration, success=False)
                state.error = str(exc)
                state.error_kind = ErrorKind.STAGE_ERROR
                state.failed_stage = current
                state.status = RunStatus.FAILED
                if not state.answer:
                    state.answer = STAGE_ERROR_MESSAGE
                break

            state.apply(update)
            duration = time.perf_counter() - stage_started
            state.trace.append(
                TraceEntry(
                    stage=current,
                    duration_ms=duration * 1000,
                    input=input_snapshot,
                    output=state.snapshot(max_chars=max_chars),
                )
            )
            metrics.observe_stage(stage=current, latency=duration, success=True)
            await self._notify(progress_callback, current, state, duration * 1000, "completed")

            current = self.next_stage(current, state)

        state.iterations = iterations
        state.elapsed_ms = (time.perf_counter() - started) * 1000
        state.success = state.error is None
        logger.info(
            "engine_run_finished",
            run_id=state.run_id,
            iterations=iterations,
            elapsed_ms=round(state.elapsed_ms, 2),
            status=state.status.value,
            success=state.success,
        )
        return state

    async def execute_parallel(
        self,
        stage_names: Sequence[str],
        state: WorkflowState,
        progress_callback: StageProgressCallback | None = None,
    ) -> WorkflowState:
        merged, traces, errors = await self._gather(tuple(stage_names), state, progress_callback)
        state.apply(merged)
        state.trace.extend(traces)
        state.parallel_errors.extend(errors)
        return state

    async def _gather(
        self,
        stage_names: Sequence[str],
        state: WorkflowState,
        progress_callback: StageProgressCallback | None,
    ) -> tuple[dict[str, Any], list[TraceEntry], list[dict[str, str]]]:
        logger.debug("engine_parallel_start", stages=list(stage_names))
        max_chars = self.settings.snapshot_max_chars

        async def _run(name: str) -> _ParallelOutcome:
            local = state.model_copy(deep=True)
            await self._notify(progress_callback, name, local, 0.0, "started")
            input_snapshot = local.snapshot(max_chars=max_chars)
            stage_started = time.perf_counter()
            try:
                stage = self.stages.get(name)
                if stage is None:
                    raise KeyError(f"Stage not found: {name}")
                update = await _invoke(stage, local)
            except Exception as exc:
                duration = time.perf_counter() - stage_started
                logger.warning("engine_parallel_stage_failed", stage=name, error=str(exc))
                metrics.observe_stage(stage=name, latency=duration, success=False)
                return _ParallelOutcome(
                    stage=name,
                    success=False,
                    update=None,
                    error=str(exc),
                    trace=TraceEntry(
                        stage=name,
                        duration_ms=duration * 1000,
                        input=input_snapshot,
                        success=False,
                        error=str(exc),
                        parallel=True,
                    ),
                )
            duration = time.perf_counter() - stage_started
            local.apply(update)
            metrics.observe_stage(stage=name, latency=duration, success=True)
            await self._notify(progress_callback, name, local, duration * 1000, "completed")
            return _ParallelOutcome(
                stage=name,
                success=True,
                update=update,
                trace=TraceEntry(
                    stage=name,
                    duration_ms=duration * 1000,
                    input=input_snapshot,
                    output=local.snapshot(max_chars=max_chars),
                    parallel=True,
                ),
            )

        outcomes = await asyncio.gather(*(_run(name) for name in stage_names))

        merged: dict[str, Any] = {}
        traces: list[TraceEntry] = []
        errors: list[dict[str, str]] = []
        for outcome in outcomes:
            traces.append(outcome.trace)
            if outcome.success:
                merged.update(outcome.update or {})
            else:
                errors.append({"stage": outcome.stage, "error": outcome.error or "unknown error"})
        return merged, traces, errors

    def _abort_loop(self, state: WorkflowState, error: EngineLoopLimit) -> None:
        logger.error("engine_loop_limit", stage=error.stage, limit=error.limit, run_id=state.run_id)
        metrics.increment_loop_abort(stage=error.stage)
        state.trace.append(
            TraceEntry(
                stage=error.stage,
                duration_ms=0.0,
                input=state.snapshot(max_chars=self.settings.snapshot_max_chars),
                success=False,
                error=str(error),
            )
        )
        state.error = LOOP_LIMIT_MESSAGE
        state.error_kind = ErrorKind.ENGINE_LOOP_LIMIT
        state.failed_stage = error.stage
        state.status = RunStatus.FAILED
        state.answer = LOOP_LIMIT_MESSAGE

    @staticmethod
    async def _notify(
        callback: StageProgressCallback | None,
        stage: str,
        state: WorkflowState,
        duration_ms: float,
        status: str,
    ) -> None:
        if callback is None:
            return
        try:
            result = callback(stage, state, duration_ms, status)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("engine_progress_callback_failed", stage=stage, error=str(exc))


async def _invoke(stage: Stage, state: WorkflowState) -> StageResult:
    result = stage(state)
    if inspect.isawaitable(result):
        result = await result
    return result


__all__ = [
    "Computed",
    "END",
    "Edge",
    "EngineLoopLimit",
    "Stage",
    "StageProgressCallback",
    "Static",
    "WorkflowEngine",
    "as_edge",
]
