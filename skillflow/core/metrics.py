from __future__ import annotations

from prometheus_client import Counter, Histogram

STAGE_LATENCY_SECONDS = Histogram(
    "skillflow_stage_latency_seconds",
    "Latency of each workflow stage invocation",
    labelnames=("stage",),
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

STAGE_OUTCOMES_TOTAL = Counter(
    "skillflow_stage_outcomes_total",
    "Stage invocations grouped by outcome",
    labelnames=("stage", "outcome"),
)

ENGINE_LOOP_ABORTS_TOTAL = Counter(
    "skillflow_engine_loop_aborts_total",
    "Runs halted because the iteration cap was exceeded",
    labelnames=("stage",),
)

PLAN_OUTCOMES_TOTAL = Counter(
    "skillflow_plan_outcomes_total",
    "Planner invocations grouped by outcome (ready/retry/error)",
    labelnames=("outcome",),
)

PLAN_STEPS = Histogram(
    "skillflow_plan_steps",
    "Number of steps produced per skill plan",
    buckets=(0, 1, 2, 3, 4, 5, 8, 13, 21),
)

STEP_DISPATCH_TOTAL = Counter(
    "skillflow_step_dispatch_total",
    "Skill step dispatch attempts grouped by skill and outcome",
    labelnames=("skill", "outcome"),
)

SOFT_FAILURE_TOTAL = Counter(
    "skillflow_soft_failure_total",
    "Successful external calls reclassified as failures",
    labelnames=("skill", "tag"),
)

RECOVERY_DECISIONS_TOTAL = Counter(
    "skillflow_recovery_decisions_total",
    "Recovery decisions grouped by action and decision source",
    labelnames=("action", "source"),
)

COMMAND_REQUESTS_TOTAL = Counter(
    "skillflow_command_requests_total",
    "Requests sent to the command-execution service",
    labelnames=("skill", "status"),
)

COMMAND_CIRCUIT_TRIPS_TOTAL = Counter(
    "skillflow_command_circuit_trips_total",
    "Number of times the command-service circuit breaker opened",
)


def observe_stage(*, stage: str, latency: float, success: bool) -> None:
    STAGE_LATENCY_SECONDS.labels(stage=stage).observe(latency)
    STAGE_OUTCOMES_TOTAL.labels(stage=stage, outcome="success" if success else "failure").inc()


def increment_loop_abort(*, stage: str) -> None:
    ENGINE_LOOP_ABORTS_TOTAL.labels(stage=stage).inc()


def record_plan_outcome(*, outcome: str, steps: int | None = None) -> None:
    PLAN_OUTCOMES_TOTAL.labels(outcome=outcome).inc()
    if steps is not None:
        PLAN_STEPS.observe(steps)


def record_step_dispatch(*, skill: str, outcome: str) -> None:
    STEP_DISPATCH_TOTAL.labels(skill=skill, outcome=outcome).inc()


def record_soft_failure(*, skill: str, tag: str) -> None:
    SOFT_FAILURE_TOTAL.labels(skill=skill, tag=tag).inc()


def record_recovery_decision(*, action: str, source: str) -> None:
    RECOVERY_DECISIONS_TOTAL.labels(action=action, source=source).inc()


def record_command_request(*, skill: str, status: str) -> None:
    COMMAND_REQUESTS_TOTAL.labels(skill=skill, status=status).inc()


def increment_command_circuit_trip() -> None:
    COMMAND_CIRCUIT_TRIPS_TOTAL.inc()
