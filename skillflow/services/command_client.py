from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core import metrics
from ..core.config import CommandServiceSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class CircuitOpenError(RuntimeError):
    """Raised when the command-service circuit breaker is open."""


class CommandServiceError(RuntimeError):
    """Raised when the command service answers with a non-success HTTP status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"Command service returned HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class _CircuitBreaker:
    def __init__(self, threshold: int, reset_seconds: float) -> None:
        self._threshold = max(1, threshold)
        self._reset_seconds = max(1.0, reset_seconds)
        self._failure_count = 0
        self._opened_until = 0.0
        self._lock = asyncio.Lock()

    async def before_request(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._opened_until > now:
                raise CircuitOpenError("Command service circuit breaker is open")
            if self._opened_until and now >= self._opened_until:
                # cool-down elapsed
                self._failure_count = 0
                self._opened_until = 0.0

    async def record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._opened_until = 0.0

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._failure_count >= self._threshold:
                self._opened_until = time.monotonic() + self._reset_seconds
                self._failure_count = 0
                metrics.increment_command_circuit_trip()
                logger.warning("command_circuit_open", reset_seconds=self._reset_seconds)

    def status(self) -> dict[str, float | int | bool]:
        opened_for = max(0.0, self._opened_until - time.monotonic()) if self._opened_until else 0.0
        return {
            "is_open": self._opened_until > time.monotonic(),
            "seconds_until_close": opened_for,
            "failure_streak": self._failure_count,
        }


class CommandServiceClient:
    """Async client for the external command-execution service.

    Only failures to reach the service are retried. Once a request has been
    delivered, whatever the service answers is returned as-is, so a skill with
    side effects never runs twice because of this client.
    """

    def __init__(self, settings: CommandServiceSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.endpoint.rstrip("/"),
            headers={"Content-Type": "application/json", **settings.headers},
            verify=settings.verify_ssl,
        )
        self._breaker = _CircuitBreaker(
            threshold=settings.circuit_breaker_threshold,
            reset_seconds=settings.circuit_breaker_reset_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def circuit_status(self) -> dict[str, float | int | bool]:
        return self._breaker.status()

    async def execute(
        self,
        skill: str,
        args: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        """Run one skill remotely and return the decoded response body."""
        await self._breaker.before_request()
        timeout = None
        if timeout_ms is not None:
            timeout = httpx.Timeout(timeout_ms / 1000 + self._settings.timeout_grace_seconds)
        body = {"skill": skill, "args": dict(args)}

        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.ConnectError),
                wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
                stop=stop_after_attempt(self._settings.connect_retries + 1),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.post(
                        self._settings.execute_path,
                        json=body,
                        timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
                    )
        except httpx.HTTPError as exc:
            await self._breaker.record_failure()
            metrics.record_command_request(skill=skill, status="transport_error")
            logger.warning(
                "command_request_failed",
                skill=skill,
                error=str(exc) or type(exc).__name__,
                latency=round(time.perf_counter() - start, 4),
            )
            raise

        await self._breaker.record_success()
        metrics.record_command_request(skill=skill, status=str(response.status_code))
        logger.debug(
            "command_request_completed",
            skill=skill,
            status=response.status_code,
            latency=round(time.perf_counter() - start, 4),
        )
        if not response.is_success:
            raise CommandServiceError(response.status_code, response.text[:500])
        try:
            payload = response.json()
        except ValueError as exc:
            raise CommandServiceError(response.status_code, "response body is not JSON") from exc
        if not isinstance(payload, dict):
            raise CommandServiceError(response.status_code, "response body is not an object")
        return payload

    async def is_available(self) -> bool:
        try:
            response = await self._client.get(self._settings.health_path, timeout=3.0)
        except httpx.HTTPError:
            return False
        return response.is_success


__all__ = ["CircuitOpenError", "CommandServiceClient", "CommandServiceError"]
