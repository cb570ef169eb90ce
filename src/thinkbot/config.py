"""Configuration management for Thinkbot."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field

_logger = logging.getLogger(__name__)


class UpstreamConfig(BaseModel):
    api_type: str = "openai"  # "openai" (OpenAI-compatible) or "ollama"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout: float = Field(default=30, gt=0)
    referer: str = ""  # sent as HTTP-Referer (OpenRouter attribution)
    title: str = "Thinkbot"
    system_prompt: str = ""
    extra_params: dict[str, Any] = Field(default_factory=dict)  # merged into every request


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=4, ge=1)
    backoff_base: float = Field(default=1.0, ge=0)  # seconds -- exponential: 1, 2, 4, ...
    backoff_cap: float = Field(default=10.0, ge=0)


class HistoryConfig(BaseModel):
    max_turns: int = Field(default=10, ge=1)
    summary_size: int = Field(default=4, ge=0)
    sweep_interval: float = Field(default=3600, gt=0)
    max_age: float = Field(default=3600, gt=0)


class StreamConfig(BaseModel):
    words_per_chunk: int = Field(default=5, ge=1)
    chunk_delay: float = Field(default=0.05, ge=0)


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=5000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class DiagnosticsConfig(BaseModel):
    events_file: str = ""  # JSONL event log, disabled when empty
    dns_check: bool = True


class RelayConfig(BaseModel):
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)


CONFIG_FILENAME = "thinkbot.yaml"

# (env var, section, key); the first variable found wins for a given key
_ENV_OVERRIDES: list[tuple[str, str, str]] = [
    ("UPSTREAM_API_URL", "upstream", "base_url"),
    ("UPSTREAM_API_KEY", "upstream", "api_key"),
    ("OPENROUTER_API_KEY", "upstream", "api_key"),
    ("UPSTREAM_API_TYPE", "upstream", "api_type"),
    ("UPSTREAM_MODEL", "upstream", "model"),
    ("PORT", "server", "port"),
    ("HOST", "server", "host"),
]


def apply_env_overrides(
    raw: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Overlay environment variables onto a raw config dict.

    Returns a new dict; *raw* is left untouched.
    """
    env = os.environ if environ is None else environ
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in raw.items()}
    seen: set[tuple[str, str]] = set()
    for var, section, key in _ENV_OVERRIDES:
        value = env.get(var)
        if not value or (section, key) in seen:
            continue
        seen.add((section, key))
        if not isinstance(merged.get(section), dict):
            merged[section] = {}
        merged[section][key] = value
    return merged


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[RelayConfig, Path | None]:
    """Load configuration from YAML, then apply environment overrides.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./thinkbot.yaml``
      3. User config dir: ``~/.thinkbot/thinkbot.yaml``
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".thinkbot"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break

    raw: dict[str, Any] = {}
    resolved: Path | None = None
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            raw = yaml.safe_load(f) or {}
        resolved = resolved.resolve()
    else:
        _logger.info("No config file found, using defaults")

    return RelayConfig.model_validate(apply_env_overrides(raw, environ)), resolved
