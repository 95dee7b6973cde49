"""Configuration models and loaders for the andromeda gateway.

Values come from an optional YAML file, overridden by environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse, urlunparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "andromeda_gateway/config.yaml"

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You are Andromeda, a space-themed concept AI.",
        "Speak with cinematic clarity, be concise, and offer actionable insights.",
        "Use tools when useful. If a tool is called, explain the result briefly.",
    ]
)


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:3000"

    upstream_base_url: str = "https://api.openai.com"
    upstream_api_key: str | None = None
    default_model: str = "gpt-4o-mini"
    allowed_models: list[str] = Field(default_factory=list)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 0.6

    max_session_messages: int = 20
    session_ttl_seconds: float = 1800.0
    max_message_chars: int = 4000

    rate_limit_max: int = 30
    rate_limit_window_seconds: float = 60.0

    max_tool_loops: int = 3
    upstream_timeout_seconds: float = 20.0
    upstream_stream_timeout_seconds: float = 60.0
    turn_deadline_seconds: float | None = None
    max_answer_chars: int = 100_000

    stream_keepalive_seconds: float = 15.0
    trust_forwarded_for: bool = False

    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "GatewayConfig":
        """Validate bind address and fill derived defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:3000")
        if self.default_model not in self.allowed_models:
            self.allowed_models = [self.default_model, *self.allowed_models]
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator(
        "max_session_messages",
        "max_message_chars",
        "rate_limit_max",
        "max_tool_loops",
        "max_answer_chars",
    )
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        """Reject zero or negative limits."""
        if value < 1:
            raise ValueError("limits must be >= 1")
        return value

    @field_validator(
        "session_ttl_seconds",
        "rate_limit_window_seconds",
        "upstream_timeout_seconds",
        "upstream_stream_timeout_seconds",
    )
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        """Reject zero or negative durations."""
        if value <= 0:
            raise ValueError("durations must be > 0")
        return value

    @field_validator("turn_deadline_seconds")
    @classmethod
    def _validate_turn_deadline(cls, value: float | None) -> float | None:
        """Treat non-positive turn deadlines as disabled."""
        if value is None or value <= 0:
            return None
        return value

    @field_validator("allowed_models", mode="before")
    @classmethod
    def _split_model_list(cls, value: Any) -> Any:
        """Accept a comma separated string or YAML `null` for the model list."""
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def is_model_allowed(self, model: str) -> bool:
        """Return true when a client-requested model may be forwarded."""
        return model in self.allowed_models

    def bind_address(self) -> tuple[str, int]:
        """Return host and port parsed from service_base_url."""
        parsed = urlparse(self.service_base_url)
        assert parsed.hostname is not None and parsed.port is not None
        return parsed.hostname, parsed.port


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _with_port(url: str, port: str) -> str:
    """Replace the port in a base URL, keeping scheme and host."""
    parsed = urlparse(url)
    host = parsed.hostname or "127.0.0.1"
    return urlunparse(parsed._replace(netloc=f"{host}:{int(port)}"))


_ENV_MAP: dict[str, tuple[str, ...]] = {
    "service_base_url": ("ANDROMEDA_SERVICE_BASE_URL",),
    "upstream_base_url": ("ANDROMEDA_UPSTREAM_BASE_URL",),
    "upstream_api_key": ("ANDROMEDA_UPSTREAM_API_KEY", "OPENAI_API_KEY"),
    "default_model": ("ANDROMEDA_DEFAULT_MODEL", "OPENAI_MODEL"),
    "allowed_models": ("ANDROMEDA_ALLOWED_MODELS",),
    "max_session_messages": ("ANDROMEDA_MAX_SESSION_MESSAGES",),
    "session_ttl_seconds": ("ANDROMEDA_SESSION_TTL_SECONDS",),
    "max_message_chars": ("ANDROMEDA_MAX_MESSAGE_CHARS",),
    "rate_limit_max": ("ANDROMEDA_RATE_LIMIT_MAX",),
    "rate_limit_window_seconds": ("ANDROMEDA_RATE_LIMIT_WINDOW_SECONDS",),
    "max_tool_loops": ("ANDROMEDA_MAX_TOOL_LOOPS",),
    "upstream_timeout_seconds": ("ANDROMEDA_UPSTREAM_TIMEOUT_SECONDS",),
    "upstream_stream_timeout_seconds": ("ANDROMEDA_UPSTREAM_STREAM_TIMEOUT_SECONDS",),
    "turn_deadline_seconds": ("ANDROMEDA_TURN_DEADLINE_SECONDS",),
    "stream_keepalive_seconds": ("ANDROMEDA_STREAM_KEEPALIVE_SECONDS",),
    "trust_forwarded_for": ("ANDROMEDA_TRUST_FORWARDED_FOR",),
    "logging.level": ("ANDROMEDA_LOG_LEVEL",),
    "logging.json_logs": ("ANDROMEDA_LOG_JSON",),
}

_INT_KEYS = {"max_session_messages", "max_message_chars", "rate_limit_max", "max_tool_loops"}
_FLOAT_KEYS = {
    "session_ttl_seconds",
    "rate_limit_window_seconds",
    "upstream_timeout_seconds",
    "upstream_stream_timeout_seconds",
    "turn_deadline_seconds",
    "stream_keepalive_seconds",
}
_TRUTHY = {"1", "true", "yes", "on"}


def _first_env(names: tuple[str, ...]) -> str | None:
    """Return the first set environment variable out of several aliases."""
    for name in names:
        value = os.getenv(name)
        if value is not None:
            return value
    return None


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_names in _ENV_MAP.items():
        value = _first_env(env_names)
        if value is None:
            continue

        if key in _INT_KEYS:
            out[key] = int(value)
        elif key in _FLOAT_KEYS:
            out[key] = float(value)
        elif key == "trust_forwarded_for":
            out[key] = value.strip().lower() in _TRUTHY
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.strip().lower() in _TRUTHY
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    port = os.getenv("PORT")
    if port:
        out["service_base_url"] = _with_port(str(out.get("service_base_url") or "http://127.0.0.1:3000"), port)

    return out


def resolve_config_path(path: str | None = None) -> str:
    """Return the config file path from argument, environment or default."""
    return path or os.getenv("ANDROMEDA_CONFIG") or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> GatewayConfig:
    """Load, merge, and validate gateway configuration."""
    raw = _load_yaml(resolve_config_path(path))
    raw = _override_from_env(raw)
    return GatewayConfig.model_validate(raw)
