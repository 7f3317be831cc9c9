from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepflow.logging import get_logger

logger = get_logger(__name__)

# Hard caps applied regardless of configuration
MAX_CONCURRENCY_HARD_CAP = 16
MAX_LOOP_ITERATIONS_CEILING = 1000


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for workflow validation, audit and execution."""

    max_concurrency: int = env_field(
        8,
        "STEPFLOW_MAX_CONCURRENCY",
        description="Maximum number of steps running at the same time",
    )
    step_timeout_seconds: float | None = env_field(
        None,
        "STEPFLOW_STEP_TIMEOUT_SECONDS",
        description="Per-step tool timeout; unset means no timeout",
    )
    workflow_timeout_ms: int | None = env_field(
        None,
        "STEPFLOW_WORKFLOW_TIMEOUT_MS",
        description="Run deadline after which no further steps are dispatched",
    )
    max_loop_iterations: int = env_field(
        MAX_LOOP_ITERATIONS_CEILING,
        "STEPFLOW_MAX_LOOP_ITERATIONS",
        description="Iteration ceiling for loop steps without maxIterations",
    )
    blocked_domains: list[str] = env_field(
        [],
        "STEPFLOW_BLOCKED_DOMAINS",
        description="Extra hosts the security audit reports as blocked",
    )
    tool_network_allowlist: list[str] = env_field([], "TOOL_NETWORK_ALLOWLIST")
    tool_network_proxy_url: str | None = env_field(None, "TOOL_NETWORK_PROXY_URL")
    tool_fetch_timeout: float = env_field(30.0, "TOOL_FETCH_TIMEOUT")
    tool_fetch_connect_timeout: float = env_field(10.0, "TOOL_FETCH_CONNECT_TIMEOUT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("blocked_domains", "tool_network_allowlist", mode="before")
    @classmethod
    def _parse_host_list(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("max_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        if value > MAX_CONCURRENCY_HARD_CAP:
            logger.warning(
                "max_concurrency_capped",
                requested=value,
                cap=MAX_CONCURRENCY_HARD_CAP,
            )
        return min(max(1, value), MAX_CONCURRENCY_HARD_CAP)

    @field_validator("max_loop_iterations")
    @classmethod
    def _clamp_loop_iterations(cls, value: int) -> int:
        return min(max(1, value), MAX_LOOP_ITERATIONS_CEILING)

    @field_validator("step_timeout_seconds", "workflow_timeout_ms")
    @classmethod
    def _positive_timeout(cls, value: Any) -> Any:
        if value is not None and value <= 0:
            return None
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
