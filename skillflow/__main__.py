"""CLI for running one automation request through the workflow."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .orchestration.state import WorkflowState
from .orchestration.workflow import AutomationRunner
from .schemas.events import ProgressEvent, ProgressEventType


async def _print_event(event: ProgressEvent) -> None:
    if event.event_type is ProgressEventType.SYNTHESIS_TOKEN:
        return
    prefix = f"[{event.event_type.value}]"
    if event.step_index is not None:
        prefix += f" step {event.step_index + 1}"
    print(f"{prefix} {event.message}", flush=True)


def _trace_summary(state: WorkflowState) -> list[dict[str, Any]]:
    return [
        {
            "stage": entry.stage,
            "duration_ms": round(entry.duration_ms, 2),
            "success": entry.success,
            "error": entry.error,
        }
        for entry in state.trace
    ]


async def _run(settings: Settings, request: str, *, verbose: bool) -> WorkflowState:
    runner = AutomationRunner(settings, progress_emitter=_print_event if verbose else None)
    return await runner.run(request)


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan and execute an automation request")
    parser.add_argument("request", help="Natural-language request to automate.")
    parser.add_argument("--json", action="store_true", help="Dump the final workflow state as JSON.")
    parser.add_argument("--quiet", action="store_true", help="Do not print step progress events.")
    parser.add_argument("--endpoint", default=None, help="Override the command-service base URL.")
    args = parser.parse_args()

    settings = get_settings()
    if args.endpoint:
        settings = settings.model_copy(
            update={"command_service": settings.command_service.model_copy(update={"endpoint": args.endpoint})}
        )
    configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)

    state = asyncio.run(_run(settings, args.request, verbose=not args.quiet and not args.json))
    if args.json:
        print(state.model_dump_json(indent=2))
        return

    print()
    print(state.answer or state.error or "(no answer)")
    print()
    summary = {"status": state.status.value, "iterations": state.iterations, "trace": _trace_summary(state)}
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
