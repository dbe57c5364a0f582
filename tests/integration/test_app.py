"""Integration tests for the App session lifecycle.

Tests cover: declaration handles, eager option validation, duplicate IDs,
use after finalize, store locking, borrowed runtime ownership and the
metrics textfile export.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from dockform.app import App
from dockform.errors import (
    ConfigurationError,
    DuplicateLogicalId,
    InvalidOption,
    SessionClosed,
    StoreLocked,
)
from dockform.models.config import DockformConfig
from dockform.models.resources import Ref, ResourceKind
from dockform.state.store import FileStateStore, MemoryStateStore
from tests.conftest import FakeRuntime

pytestmark = pytest.mark.integration

# ---------------------------------------------------------------------------
# Declaration
# ---------------------------------------------------------------------------


class TestDeclare:
    async def test_handle_exposes_name_and_ref(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            net = app.network("backend", name="todo-backend")
            plain = app.volume("data")

        assert net.Name == "todo-backend"
        assert net.ref == Ref("backend", ResourceKind.NETWORK)
        assert plain.name == "data"

    async def test_declare_by_kind_string(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            handle = app.declare("network", "n1", {"internal": True})

        assert handle.kind == ResourceKind.NETWORK
        assert app.descriptors[0].config["internal"] is True

    async def test_duplicate_logical_id(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            app.network("n1")
            with pytest.raises(DuplicateLogicalId):
                app.volume("n1")

    async def test_unknown_option_rejected_at_declaration(
        self, runtime: FakeRuntime, store: MemoryStateStore
    ) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            with pytest.raises(InvalidOption) as exc_info:
                app.network("n1", colour="blue")

        assert exc_info.value.option == "colour"
        assert runtime.calls == []

    async def test_mount_cannot_be_declared_alone(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            with pytest.raises(ConfigurationError):
                app.declare(ResourceKind.MOUNT, "m1", {})

    async def test_explicit_dependencies_accept_handles_and_ids(
        self, runtime: FakeRuntime, store: MemoryStateStore
    ) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            net = app.network("n1")
            app.volume("v1")
            app.container("c1", image="redis", depends_on=[net, "v1"])

        container = app.descriptors[-1]
        assert container.depends_on == frozenset({"n1", "v1"})


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


class TestFinalize:
    async def test_declare_after_finalize_raises(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            app.network("n1")
            await app.finalize()
            with pytest.raises(SessionClosed):
                app.network("n2")

    async def test_finalize_twice_raises(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            await app.finalize()
            with pytest.raises(SessionClosed):
                await app.finalize()

    async def test_finalize_after_close_raises(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        app = App(store.app, runtime=runtime, store=store)
        await app.open()
        await app.close()

        with pytest.raises(SessionClosed):
            await app.finalize()

    async def test_borrowed_runtime_is_not_closed(self, runtime: FakeRuntime, store: MemoryStateStore) -> None:
        async with App(store.app, runtime=runtime, store=store) as app:
            await app.finalize()

        assert not runtime.closed

    async def test_metrics_textfile_written(
        self, runtime: FakeRuntime, store: MemoryStateStore, tmp_path: Path
    ) -> None:
        config = DockformConfig()
        config.metrics.textfile = str(tmp_path / "dockform.prom")

        async with App(store.app, runtime=runtime, store=store, config=config) as app:
            app.network("n1")
            await app.finalize()

        text = (tmp_path / "dockform.prom").read_text()
        assert "dockform_resource_operations_total" in text
        assert "dockform_last_run_timestamp_seconds" in text


# ---------------------------------------------------------------------------
# Store locking
# ---------------------------------------------------------------------------


class TestStoreLocking:
    async def test_second_session_on_same_app_fails_fast(self, runtime: FakeRuntime) -> None:
        first_store = MemoryStateStore("locked-app")
        second_store = MemoryStateStore("locked-app")

        async with App("locked-app", runtime=runtime, store=first_store):
            second = App("locked-app", runtime=runtime, store=second_store)
            with pytest.raises(StoreLocked):
                await second.open()

    async def test_lock_released_on_exit(self, runtime: FakeRuntime) -> None:
        store = MemoryStateStore("reopen-app")

        async with App("reopen-app", runtime=runtime, store=store):
            pass
        async with App("reopen-app", runtime=runtime, store=store) as app:
            report = await app.finalize()

        assert report.ok

    async def test_file_store_lock_conflict(self, runtime: FakeRuntime, tmp_path: Path) -> None:
        async with App("todo", runtime=runtime, store=FileStateStore(tmp_path, "todo")) as app:
            intruder = App("todo", runtime=runtime, store=FileStateStore(tmp_path, "todo"))
            with pytest.raises(StoreLocked):
                await intruder.open()
            app.network("n1")
            await app.finalize()

        async with App("todo", runtime=runtime, store=FileStateStore(tmp_path, "todo")) as app:
            app.network("n1")
            report = await app.finalize()

        assert [o.logical_id for o in report.unchanged] == ["n1"]

    async def test_finalize_without_context_manager_releases_lock(
        self, runtime: FakeRuntime, tmp_path: Path
    ) -> None:
        config = DockformConfig()
        config.state.directory = str(tmp_path)

        first = App("todo", runtime=runtime, config=config)
        first.network("n1")
        await first.finalize()
        second = App("todo", runtime=runtime, config=config)
        second.network("n1")
        report = await second.finalize()

        assert first.closed
        assert [o.logical_id for o in report.unchanged] == ["n1"]
        assert not runtime.closed

    async def test_lock_released_when_finalize_raises(self, runtime: FakeRuntime, tmp_path: Path) -> None:
        config = DockformConfig()
        config.state.directory = str(tmp_path)

        broken = App("todo", runtime=runtime, config=config)
        broken.network("a", depends_on=["b"])
        broken.network("b", depends_on=["a"])
        with pytest.raises(ConfigurationError):
            await broken.finalize()

        retry = App("todo", runtime=runtime, config=config)
        retry.network("a")
        report = await retry.finalize()

        assert [o.logical_id for o in report.created] == ["a"]

    async def test_default_store_lives_in_state_directory(self, runtime: FakeRuntime, tmp_path: Path) -> None:
        config = DockformConfig()
        config.state.directory = str(tmp_path / "state")

        async with App("todo", runtime=runtime, config=config) as app:
            app.volume("data")
            await app.finalize()

        assert (tmp_path / "state" / "todo.state.json").exists()
