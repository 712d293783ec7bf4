"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .enums import BackoffType, BrokerBackend
from .errors import ConfigError


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class BrokerConfig(BaseModel):
    backend: BrokerBackend = BrokerBackend.REDIS
    host: str = "127.0.0.1"
    port: int = 6379
    password: str | None = None
    db: int = 0
    prefix: str = "fanout"  # Redis key namespace
    block_ms: int = 1000  # XREADGROUP block time
    stalled_interval_ms: int = 30_000  # Idle time before a pending entry is reclaimed
    poll_interval_ms: int = 500  # Delayed-job promotion / stall check cadence


class BackoffPolicy(BaseModel):
    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = Field(default=2000, ge=0)

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the retry that follows ``attempts_made`` failures."""
        if self.type == BackoffType.FIXED:
            return self.delay_ms / 1000
        exponent = max(attempts_made - 1, 0)
        return self.delay_ms * (2 ** exponent) / 1000


class JobOptions(BaseModel):
    """Per-job broker options.  Applied uniformly to every queue."""

    attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: int = Field(default=10, ge=0)  # Completed jobs retained
    remove_on_fail: int = Field(default=50, ge=0)  # Failed jobs retained


class ProcessorConfig(BaseModel):
    concurrency: int = Field(default=5, ge=1)  # In-flight jobs per queue


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"
    metrics_enabled: bool = False
    metrics_port: int = 9090


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level application settings.

    Loaded from TOML config files, overridden by environment variables
    (``FANOUT_BROKER__HOST=redis`` and so on).
    """

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    jobs: JobOptions = Field(default_factory=JobOptions)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "FANOUT_", "env_nested_delimiter": "__"}


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Precedence, lowest first: field defaults, the TOML file, ``FANOUT_*``
    environment variables, *overrides*.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.  Nested sections
            are merged key by key.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                try:
                    data = tomli.load(f)
                except tomli.TOMLDecodeError as exc:
                    raise ConfigError(f"Invalid config file {path}: {exc}") from exc

    # Init kwargs outrank the environment, so env values are folded in here.
    env_data = Settings().model_dump(exclude_unset=True)
    data = _merge(data, env_data)
    if overrides:
        data = _merge(data, overrides)

    return Settings(**data)


def _merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *updates* into a copy of *base*."""
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged
