"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from dockform.models.config import (
    DockformConfig,
    LogConfig,
    MetricsConfig,
    ReconcilerConfig,
    RuntimeConfig,
    StateConfig,
)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"DOCKFORM_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    val = float(_env(key, str(default)))
    if val < 0:
        raise ValueError(f"DOCKFORM_{key} must not be negative: {val}")
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_log_format(value: str) -> str:
    valid = {"json", "console"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log format: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> DockformConfig:
    """Load configuration from DOCKFORM_* environment variables."""
    return DockformConfig(
        runtime=RuntimeConfig(
            docker_host=_env("DOCKER_HOST", ""),
            timeout_seconds=_env_int("RUNTIME_TIMEOUT", 60, min_val=5, max_val=600),
        ),
        state=StateConfig(
            directory=_env("STATE_DIR", ".dockform"),
        ),
        reconciler=ReconcilerConfig(
            max_workers=_env_int("MAX_WORKERS", 4, min_val=1, max_val=32),
            run_timeout_seconds=_env_float("RUN_TIMEOUT", 0.0),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            format=_validate_log_format(_env("LOG_FORMAT", "json")),
        ),
        metrics=MetricsConfig(
            textfile=_env("METRICS_TEXTFILE", ""),
        ),
    )
