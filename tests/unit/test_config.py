"""Unit tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from dockform.config import load_config


class TestLoadConfig:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in ("STATE_DIR", "MAX_WORKERS", "LOG_LEVEL", "LOG_FORMAT", "RUN_TIMEOUT", "DOCKER_HOST"):
            monkeypatch.delenv(f"DOCKFORM_{key}", raising=False)

        config = load_config()

        assert config.state.directory == ".dockform"
        assert config.reconciler.max_workers == 4
        assert config.reconciler.run_timeout_seconds == 0.0
        assert config.log.level == "info"
        assert config.log.format == "json"
        assert config.runtime.docker_host == ""
        assert config.metrics.textfile == ""

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DOCKFORM_STATE_DIR", "/var/lib/dockform")
        monkeypatch.setenv("DOCKFORM_DOCKER_HOST", "unix:///run/user/1000/docker.sock")
        monkeypatch.setenv("DOCKFORM_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DOCKFORM_LOG_FORMAT", "console")
        monkeypatch.setenv("DOCKFORM_RUN_TIMEOUT", "30")

        config = load_config()

        assert config.state.directory == "/var/lib/dockform"
        assert config.runtime.docker_host == "unix:///run/user/1000/docker.sock"
        assert config.log.level == "debug"
        assert config.log.format == "console"
        assert config.reconciler.run_timeout_seconds == 30.0

    @pytest.mark.parametrize(("raw", "expected"), [("0", 1), ("8", 8), ("500", 32)])
    def test_max_workers_clamped(self, monkeypatch: pytest.MonkeyPatch, raw: str, expected: int) -> None:
        monkeypatch.setenv("DOCKFORM_MAX_WORKERS", raw)
        assert load_config().reconciler.max_workers == expected

    def test_runtime_timeout_clamped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DOCKFORM_RUNTIME_TIMEOUT", "1")
        assert load_config().runtime.timeout_seconds == 5

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("LOG_LEVEL", "verbose"),
            ("LOG_FORMAT", "xml"),
            ("RUN_TIMEOUT", "-1"),
            ("MAX_WORKERS", "many"),
        ],
    )
    def test_invalid_values(self, monkeypatch: pytest.MonkeyPatch, key: str, value: str) -> None:
        monkeypatch.setenv(f"DOCKFORM_{key}", value)
        with pytest.raises(ValueError):
            load_config()
