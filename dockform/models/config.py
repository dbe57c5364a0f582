"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RuntimeConfig:
    """Container runtime connection."""

    docker_host: str = ""  # empty: use DOCKER_HOST / docker's own defaults
    timeout_seconds: int = 60


@dataclass
class StateConfig:
    """State store location."""

    directory: str = ".dockform"


@dataclass
class ReconcilerConfig:
    """Reconciliation scheduling."""

    max_workers: int = 4
    run_timeout_seconds: float = 0.0  # 0 disables the run timeout


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class MetricsConfig:
    """Prometheus textfile export."""

    textfile: str = ""


@dataclass
class DockformConfig:
    """Top-level dockform configuration."""

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    state: StateConfig = field(default_factory=StateConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    log: LogConfig = field(default_factory=LogConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
