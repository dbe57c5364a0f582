"""Tests for the dockform click CLI.

The docker runtime is replaced by the shared FakeRuntime and structlog output
is captured, so the commands run end to end against a state directory under
tmp_path.
"""

from __future__ import annotations

import json
import textwrap
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner
from structlog.testing import capture_logs

from dockform import __version__
from dockform.cli import cli
from dockform.errors import RuntimeRejected
from tests.conftest import FakeRuntime

_STACK = """
def stack(app):
    net = app.network("backend", name="todo-backend")
    data = app.volume("data")
    app.container("api", image="redis:7", networking=[net], volumes={"/data": data})
"""


@pytest.fixture(autouse=True)
def configured_logging(monkeypatch: pytest.MonkeyPatch) -> Iterator[list[tuple[str, str]]]:
    calls: list[tuple[str, str]] = []
    monkeypatch.setattr("dockform.cli.main.setup_logging", lambda level, fmt: calls.append((level, fmt)))
    with capture_logs():
        yield calls


@pytest.fixture
def fake(monkeypatch: pytest.MonkeyPatch) -> FakeRuntime:
    shared = FakeRuntime()
    monkeypatch.setattr("dockform.runtime.docker.DockerRuntimeClient", lambda *args, **kwargs: shared)
    return shared


@pytest.fixture
def invoke(tmp_path: Path):
    runner = CliRunner()
    state_dir = str(tmp_path / "state")

    def _invoke(*args: str, input: str | None = None):
        return runner.invoke(cli, ["--state-dir", state_dir, *args], input=input)

    return _invoke


def _script(tmp_path: Path, body: str = _STACK, name: str = "todo.py") -> str:
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return str(path)


# ---------------------------------------------------------------------------
# apply / plan
# ---------------------------------------------------------------------------


class TestApply:
    def test_apply_creates_then_is_idempotent(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        script = _script(tmp_path)

        first = invoke("apply", script)
        assert first.exit_code == 0, first.output
        assert "Result for app 'todo' (up):" in first.output
        assert "3 created" in first.output

        second = invoke("apply", script)
        assert second.exit_code == 0, second.output
        assert "0 created" in second.output
        assert "3 unchanged" in second.output
        assert len(fake.ops("ensure")) == 3

    def test_apply_json(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        result = invoke("apply", _script(tmp_path), "--json")

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["app"] == "todo"
        assert [o["logical_id"] for o in report["created"]] == ["backend", "data", "api"]

    def test_app_name_sources(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        named = _script(tmp_path, 'APP_NAME = "shop"\n' + _STACK, name="stack.py")

        assert invoke("apply", named).exit_code == 0
        assert invoke("apply", named, "--app", "other").exit_code == 0

        assert (tmp_path / "state" / "shop.state.json").exists()
        assert (tmp_path / "state" / "other.state.json").exists()

    def test_runtime_failure_exits_one(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        fake.fail_on["api"] = RuntimeRejected("port already allocated", "api")

        result = invoke("apply", _script(tmp_path))

        assert result.exit_code == 1
        assert "port already allocated" in result.output
        assert "1 failed" in result.output

    def test_cycle_exits_two_without_runtime_calls(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        script = _script(
            tmp_path,
            """
            def stack(app):
                app.network("a", depends_on=["b"])
                app.network("b", depends_on=["a"])
            """,
        )

        result = invoke("apply", script)

        assert result.exit_code == 2
        assert "Cyclic dependency" in result.output
        assert fake.calls == []

    def test_script_without_stack(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        result = invoke("apply", _script(tmp_path, "NAME = 'x'\n"))

        assert result.exit_code == 1
        assert "does not define a stack(app) function" in result.output

    def test_plan_changes_nothing(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        result = invoke("plan", _script(tmp_path))

        assert result.exit_code == 0, result.output
        assert "Plan for app 'todo' (plan):" in result.output
        assert "3 created" in result.output
        assert fake.mutating_calls() == []
        assert not (tmp_path / "state" / "todo.state.json").exists()


# ---------------------------------------------------------------------------
# state / destroy
# ---------------------------------------------------------------------------


class TestStateAndDestroy:
    def test_state_lists_records(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        invoke("apply", _script(tmp_path))

        text = invoke("state", "todo")
        assert text.exit_code == 0
        assert "network-backend-" in text.output

        as_json = json.loads(invoke("state", "todo", "--json").output)
        assert sorted(as_json) == ["api", "backend", "data"]
        assert as_json["api"]["depends_on"] == ["backend", "data"]

    def test_state_of_unknown_app(self, invoke) -> None:
        result = invoke("state", "nothing")
        assert result.exit_code == 0
        assert "No state recorded for app 'nothing'." in result.output

    def test_state_corrupt_exits_two(self, tmp_path: Path, invoke) -> None:
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "todo.state.json").write_text("{broken")

        result = invoke("state", "todo")

        assert result.exit_code == 2
        assert "not valid JSON" in result.output

    def test_destroy_requires_confirmation(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        invoke("apply", _script(tmp_path))

        result = invoke("destroy", "todo", input="n\n")

        assert result.exit_code == 1
        assert fake.ops("remove") == []
        assert len(fake.objects) == 3

    def test_destroy_removes_in_reverse_order(self, tmp_path: Path, fake: FakeRuntime, invoke) -> None:
        invoke("apply", _script(tmp_path))

        result = invoke("destroy", "todo", "--yes")

        assert result.exit_code == 0, result.output
        assert "3 deleted" in result.output
        assert fake.objects == {}
        assert fake.seq_of("remove", "api") < fake.seq_of("remove", "backend")
        assert fake.seq_of("remove", "api") < fake.seq_of("remove", "data")
        assert "No state recorded" in invoke("state", "todo").output


# ---------------------------------------------------------------------------
# Group options
# ---------------------------------------------------------------------------


class TestGroupOptions:
    def test_version(self, invoke) -> None:
        result = invoke("--version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_log_level_override(
        self, monkeypatch: pytest.MonkeyPatch, invoke, configured_logging: list[tuple[str, str]]
    ) -> None:
        monkeypatch.delenv("DOCKFORM_LOG_FORMAT", raising=False)
        invoke("--log-level", "DEBUG", "state", "todo")
        assert configured_logging == [("debug", "json")]

    def test_invalid_environment(self, monkeypatch: pytest.MonkeyPatch, invoke) -> None:
        monkeypatch.setenv("DOCKFORM_LOG_FORMAT", "xml")

        result = invoke("state", "todo")

        assert result.exit_code == 2
        assert "Invalid log format" in result.output
