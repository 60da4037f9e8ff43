from __future__ import annotations

import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseModel):
    max_iterations: int = Field(50, ge=1, description="Hard cap on stage invocations per run.")
    snapshot_max_chars: int = Field(
        200,
        ge=16,
        description="Maximum length of any string captured in a trace snapshot.",
    )


class PlannerSettings(BaseModel):
    max_output_tokens: int = Field(1000, ge=64)
    temperature: float = Field(0.1, ge=0.0, le=1.0)
    conversation_turns: int = Field(6, ge=0, description="Recent conversation turns embedded in the prompt.")
    prior_result_lines: int = Field(3, ge=1, description="Stdout lines kept per prior successful step.")
    domain_aliases: list[tuple[str, str]] = Field(
        default_factory=lambda: [
            ("twitter.com", "x.com"),
            ("youtu.be", "youtube.com"),
            ("bard.google.com", "gemini.google.com"),
            ("chat.openai.com", "chatgpt.com"),
        ],
        description="Hostname pairs that serve the same product for session-reuse checks.",
    )


class DispatcherSettings(BaseModel):
    default_timeout_ms: int = Field(10_000, ge=100)
    search_commands: list[str] = Field(
        default_factory=lambda: ["mdfind", "find", "grep", "locate", "plocate", "rg", "fd"],
        description="Commands whose empty successful output is reclassified as a failure.",
    )
    output_preview_chars: int = Field(500, ge=32, description="Truncation applied to stdout in progress events.")
    synthesis_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "skillflow",
        description="Directory that always receives a copy of each synthesis result.",
    )
    synthesis_max_tokens: int = Field(1500, ge=64)
    synthesis_temperature: float = Field(0.2, ge=0.0, le=1.0)


class RecoverySettings(BaseModel):
    timeout_multipliers: list[int] = Field(
        default_factory=lambda: [2, 3],
        min_length=1,
        description="Escalating factors applied to a step's original timeout on silent retries.",
    )
    fallback_directory: str = Field("~/Desktop", description="Writable location offered on permission errors.")
    max_tokens: int = Field(400, ge=64)
    temperature: float = Field(0.1, ge=0.0, le=1.0)


class CommandServiceSettings(BaseModel):
    endpoint: str = Field("http://localhost:3007", description="Base URL for the command-execution service.")
    execute_path: str = Field("/command.automate", description="Relative path that executes a skill.")
    health_path: str = Field("/health", description="Relative path used to verify availability.")
    timeout_grace_seconds: float = Field(
        5.0,
        ge=0.0,
        description="Extra HTTP time allowed on top of a step's own timeout.",
    )
    connect_retries: int = Field(2, ge=0, description="Retries for requests that never reached the service.")
    circuit_breaker_threshold: int = Field(5, ge=1)
    circuit_breaker_reset_seconds: float = Field(30.0, ge=1.0)
    verify_ssl: bool = Field(True)
    headers: dict[str, str] = Field(default_factory=dict)


class LLMSettings(BaseModel):
    mode: Literal["auto", "online", "local", "none"] = Field(
        "auto",
        description="Backend preference; 'auto' tries online, then local, then the placeholder.",
    )
    external_url: str | None = Field(default=None, description="Blocking answer endpoint for the online backend.")
    external_stream: bool = Field(False, description="Whether the online backend supports SSE streaming.")
    external_timeout_seconds: float = Field(30.0, ge=0.1)
    external_headers: dict[str, str] = Field(default_factory=dict)
    ollama_enabled: bool = Field(True)
    ollama_host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    ollama_port: int = Field(11434, ge=1, le=65535)
    ollama_model: str = Field("phi4", description="Default model served via Ollama.")
    request_timeout_seconds: float = Field(60.0, ge=1.0)


class ObservabilitySettings(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True, description="Render logs as JSON lines; console rendering otherwise.")


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    engine: EngineSettings = Field(default_factory=EngineSettings)  # type: ignore[arg-type]
    planner: PlannerSettings = Field(default_factory=PlannerSettings)  # type: ignore[arg-type]
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)  # type: ignore[arg-type]
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)  # type: ignore[arg-type]
    command_service: CommandServiceSettings = Field(default_factory=CommandServiceSettings)  # type: ignore[arg-type]
    llm: LLMSettings = Field(default_factory=LLMSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
