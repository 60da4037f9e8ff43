from __future__ import annotations

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Sequence, Union

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import LLMSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

TokenCallback = Callable[[str], Union[Awaitable[None], None]]

LLM_MAX_RETRIES = 3
LLM_BASE_DELAY = 1.0  # seconds
LLM_MAX_DELAY = 10.0  # seconds
HEALTHCHECK_TIMEOUT = 3.0


class LLMUnavailableError(RuntimeError):
    """Raised when a backend cannot serve a generation request."""


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    max_tokens: int = 500
    temperature: float = 0.1


class LLMBackend(ABC):
    """Contract shared by every text-generation backend.

    ``payload`` carries structured context next to the prompt (most notably
    ``system_instructions``). When ``on_token`` is given, backends that can
    stream deliver text incrementally through it; others call it once with
    the full answer. Either way the complete text is returned.
    """

    @abstractmethod
    async def generate_answer(
        self,
        prompt: str,
        payload: Mapping[str, Any] | None = None,
        options: GenerationOptions | None = None,
        on_token: TokenCallback | None = None,
    ) -> str: ...

    @abstractmethod
    async def is_available(self) -> bool: ...

    @abstractmethod
    def get_info(self) -> dict[str, str]: ...


async def emit_token(callback: TokenCallback | None, token: str) -> None:
    if callback is None or not token:
        return
    result = callback(token)
    if inspect.isawaitable(result):
        await result


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def _extract_content(result: Any) -> str:
    if isinstance(result, AIMessage) or hasattr(result, "content"):
        content = result.content
        if isinstance(content, list):
            return "".join(
                item.get("text", "") if isinstance(item, dict) else str(item)
                for item in content
            )
        return str(content)
    return str(result)


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


class OllamaLLMBackend(LLMBackend):
    """Local backend talking to an Ollama server through LangChain."""

    def __init__(self, settings: LLMSettings, *, client_factory: Callable[..., Any] | None = None) -> None:
        self._settings = settings
        self._base_url = _build_base_url(settings.ollama_host, settings.ollama_port)
        self._client_factory = client_factory or ChatOllama
        self._clients: dict[tuple[float, int], Any] = {}

    def _client_for(self, options: GenerationOptions) -> Any:
        key = (options.temperature, options.max_tokens)
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(
                model=self._settings.ollama_model,
                base_url=self._base_url,
                temperature=options.temperature,
                num_predict=options.max_tokens,
            )
            self._clients[key] = client
        return client

    async def generate_answer(
        self,
        prompt: str,
        payload: Mapping[str, Any] | None = None,
        options: GenerationOptions | None = None,
        on_token: TokenCallback | None = None,
    ) -> str:
        options = options or GenerationOptions()
        system_prompt = (payload or {}).get("system_instructions")
        messages = _messages_from_text(prompt, system_prompt)
        client = self._client_for(options)

        if on_token is not None:
            accumulated = ""
            try:
                async for chunk in client.astream(messages):
                    token = _extract_content(chunk)
                    if token:
                        accumulated += token
                        await emit_token(on_token, token)
            except Exception as exc:
                logger.warning("llm_stream_failed", error=str(exc), model=self._settings.ollama_model)
            if accumulated.strip():
                return accumulated
            logger.warning("llm_stream_empty_fallback", model=self._settings.ollama_model)
            answer = await self._invoke_with_retry(client, messages)
            await emit_token(on_token, answer)
            return answer

        return await self._invoke_with_retry(client, messages)

    async def _invoke_with_retry(self, client: Any, messages: Sequence[BaseMessage]) -> str:
        last_error: Exception | None = None
        for attempt in range(LLM_MAX_RETRIES):
            try:
                result = await asyncio.wait_for(
                    client.ainvoke(messages),
                    timeout=self._settings.request_timeout_seconds,
                )
                return _extract_content(result)
            except asyncio.TimeoutError:
                last_error = asyncio.TimeoutError(
                    f"LLM request timed out after {self._settings.request_timeout_seconds} seconds"
                )
                logger.warning("llm_generation_timeout", attempt=attempt + 1, model=self._settings.ollama_model)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "llm_generation_retry",
                    attempt=attempt + 1,
                    max_attempts=LLM_MAX_RETRIES,
                    error=str(exc),
                    model=self._settings.ollama_model,
                )
            if attempt < LLM_MAX_RETRIES - 1:
                await asyncio.sleep(min(LLM_BASE_DELAY * (2**attempt), LLM_MAX_DELAY))

        logger.error(
            "llm_generation_failed",
            error=str(last_error) if last_error else "unknown error",
            model=self._settings.ollama_model,
            attempts=LLM_MAX_RETRIES,
        )
        raise LLMUnavailableError(f"LLM generation failed after {LLM_MAX_RETRIES} attempts") from last_error

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=HEALTHCHECK_TIMEOUT) as client:
                response = await client.get(f"{self._base_url}/api/tags")
        except httpx.HTTPError:
            return False
        return response.is_success

    def get_info(self) -> dict[str, str]:
        return {"name": f"Ollama {self._settings.ollama_model}", "type": "local"}


class ExternalLLMBackend(LLMBackend):
    """Online backend for any HTTP process exposing the answer contract.

    ``POST {url}`` with ``{prompt, query, context, options}`` returns
    ``{answer}`` (or ``text``/``response``). When streaming is enabled,
    ``POST {url}/stream`` returns server-sent events whose ``data:`` lines
    carry ``{"token": ...}`` until ``[DONE]`` or a ``done``/``error`` type.
    """

    def __init__(self, settings: LLMSettings, *, client: httpx.AsyncClient | None = None) -> None:
        if not settings.external_url:
            raise ValueError("ExternalLLMBackend requires llm.external_url")
        self._settings = settings
        self._url = settings.external_url.rstrip("/")
        self._stream_url = f"{self._url}/stream"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.external_timeout_seconds),
            headers={"Content-Type": "application/json", **settings.external_headers},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _body(self, prompt: str, payload: Mapping[str, Any] | None, options: GenerationOptions) -> dict[str, Any]:
        context = dict(payload or {})
        return {
            "prompt": prompt,
            "query": context.pop("query", prompt),
            "context": context,
            "options": {"temperature": options.temperature, "max_tokens": options.max_tokens},
        }

    async def generate_answer(
        self,
        prompt: str,
        payload: Mapping[str, Any] | None = None,
        options: GenerationOptions | None = None,
        on_token: TokenCallback | None = None,
    ) -> str:
        body = self._body(prompt, payload, options or GenerationOptions())
        if on_token is not None and self._settings.external_stream:
            return await self._stream_answer(body, on_token)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                stop=stop_after_attempt(LLM_MAX_RETRIES),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.post(self._url, json=body)
        except httpx.HTTPError as exc:
            logger.error("external_llm_request_failed", url=self._url, error=str(exc) or type(exc).__name__)
            raise LLMUnavailableError(f"External LLM unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise LLMUnavailableError(f"External LLM returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise LLMUnavailableError("External LLM returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise LLMUnavailableError("External LLM returned an unexpected body")
        answer = str(data.get("answer") or data.get("text") or data.get("response") or "")
        await emit_token(on_token, answer)
        return answer

    async def _stream_answer(self, body: dict[str, Any], on_token: TokenCallback) -> str:
        try:
            return await self._consume_stream(body, on_token)
        except httpx.HTTPError as exc:
            logger.error("external_llm_stream_failed", url=self._stream_url, error=str(exc) or type(exc).__name__)
            raise LLMUnavailableError(f"External LLM stream failed: {exc}") from exc

    async def _consume_stream(self, body: dict[str, Any], on_token: TokenCallback) -> str:
        accumulated = ""
        async with self._client.stream(
            "POST",
            self._stream_url,
            json=body,
            headers={"Accept": "text/event-stream"},
        ) as response:
            if response.status_code >= 400:
                raise LLMUnavailableError(f"External LLM stream returned HTTP {response.status_code}")
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                raw = line[5:].strip()
                if raw == "[DONE]":
                    break
                try:
                    parsed = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(parsed, dict):
                    continue
                if parsed.get("type") in {"done", "error"}:
                    break
                if parsed.get("type") == "start":
                    continue
                token = str(parsed.get("token") or parsed.get("text") or parsed.get("chunk") or "")
                if token:
                    accumulated += token
                    await emit_token(on_token, token)
        return accumulated

    async def is_available(self) -> bool:
        try:
            response = await self._client.get(f"{self._url}/health", timeout=HEALTHCHECK_TIMEOUT)
        except httpx.HTTPError:
            return False
        if not response.is_success:
            return False
        try:
            status = response.json().get("status")
        except (ValueError, AttributeError):
            return False
        return status in {"ok", "healthy"}

    def get_info(self) -> dict[str, str]:
        return {"name": "External LLM", "type": "external"}


class PlaceholderLLMBackend(LLMBackend):
    """Stand-in used when no backend is configured; never available."""

    async def generate_answer(
        self,
        prompt: str,
        payload: Mapping[str, Any] | None = None,
        options: GenerationOptions | None = None,
        on_token: TokenCallback | None = None,
    ) -> str:
        raise LLMUnavailableError("No LLM backend is configured")

    async def is_available(self) -> bool:
        return False

    def get_info(self) -> dict[str, str]:
        return {"name": "Placeholder", "type": "placeholder"}


def resolve_llm_backend(settings: LLMSettings, injected: LLMBackend | None = None) -> LLMBackend:
    """Pick one backend for a run: injected, then online, then local, then placeholder."""
    if injected is not None:
        return injected
    if settings.mode in {"auto", "online"} and settings.external_url:
        return ExternalLLMBackend(settings)
    if settings.mode in {"auto", "local"} and settings.ollama_enabled:
        return OllamaLLMBackend(settings)
    return PlaceholderLLMBackend()


async def backend_ready(backend: LLMBackend) -> bool:
    try:
        return await backend.is_available()
    except Exception as exc:
        logger.warning("llm_availability_check_failed", backend=backend.get_info().get("name"), error=str(exc))
        return False


__all__ = [
    "ExternalLLMBackend",
    "GenerationOptions",
    "LLMBackend",
    "LLMUnavailableError",
    "OllamaLLMBackend",
    "PlaceholderLLMBackend",
    "TokenCallback",
    "backend_ready",
    "emit_token",
    "resolve_llm_backend",
]
