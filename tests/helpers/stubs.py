from __future__ import annotations

import json
from collections import deque
from typing import Any, Callable, Iterable, Mapping

from skillflow.schemas.events import ProgressEvent, ProgressEventType
from skillflow.services.llm import GenerationOptions, LLMBackend, LLMUnavailableError, TokenCallback, emit_token


class ScriptedLLMBackend(LLMBackend):
    """LLM stand-in that replays scripted answers and records every prompt."""

    def __init__(self, responses: Iterable[Any] = (), *, available: bool = True, stream: bool = False) -> None:
        self.responses: deque[Any] = deque(responses)
        self.available = available
        self.stream = stream
        self.prompts: list[str] = []
        self.payloads: list[Mapping[str, Any]] = []
        self.options: list[GenerationOptions | None] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate_answer(
        self,
        prompt: str,
        payload: Mapping[str, Any] | None = None,
        options: GenerationOptions | None = None,
        on_token: TokenCallback | None = None,
    ) -> str:
        self.prompts.append(prompt)
        self.payloads.append(dict(payload or {}))
        self.options.append(options)
        if not self.responses:
            raise LLMUnavailableError("script exhausted")
        response = self.responses.popleft()
        if isinstance(response, Exception):
            raise response
        if not isinstance(response, str):
            response = json.dumps(response)
        if on_token is not None:
            if self.stream:
                for word in response.split(" "):
                    await emit_token(on_token, word + " ")
            else:
                await emit_token(on_token, response)
        return response

    async def is_available(self) -> bool:
        return self.available

    def get_info(self) -> dict[str, str]:
        return {"name": "Scripted", "type": "stub"}


Responder = Callable[[str, Mapping[str, Any]], Any]


class StubCommandService:
    """Command executor that answers from a queue or a responder function."""

    def __init__(self, responses: Iterable[Any] = (), *, responder: Responder | None = None) -> None:
        self.responses: deque[Any] = deque(responses)
        self.responder = responder
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        skill: str,
        args: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> Mapping[str, Any]:
        self.calls.append({"skill": skill, "args": dict(args), "timeout_ms": timeout_ms})
        if self.responder is not None:
            response = self.responder(skill, args)
        elif self.responses:
            response = self.responses.popleft()
        else:
            response = {"ok": True, "stdout": ""}
        if isinstance(response, Exception):
            raise response
        return response

    def timeouts(self) -> list[int | None]:
        return [call["timeout_ms"] for call in self.calls]


class EventCollector:
    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    async def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[ProgressEventType]:
        return [event.event_type for event in self.events]

    def of_type(self, event_type: ProgressEventType) -> list[ProgressEvent]:
        return [event for event in self.events if event.event_type is event_type]


def plan_json(*steps: Mapping[str, Any]) -> str:
    return json.dumps(list(steps))


def shell_step(cmd: str, *argv: str, **extra: Any) -> dict[str, Any]:
    args: dict[str, Any] = {"cmd": cmd, "argv": list(argv)}
    optional = extra.pop("optional", False)
    description = extra.pop("description", f"run {cmd}")
    args.update(extra)
    return {"skill": "shell_run", "args": args, "optional": optional, "description": description}


def browser_step(action: str, *, session: str | None = None, **extra: Any) -> dict[str, Any]:
    args: dict[str, Any] = {"action": action, **extra}
    if session is not None:
        args["sessionId"] = session
    return {"skill": "browser_act", "args": args, "description": f"browser {action}"}
