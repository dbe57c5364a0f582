"""App session: declare resources, then reconcile them once.

Lifecycle::

    async with App("todo") as app:          # open(): take the store lock
        net = app.network("backend")
        app.container("api", image="todo:latest", networking=[net])
        report = await app.finalize()       # reconcile exactly once, then close()

finalize() always closes the session, so the lock is released even when
the app is used without the context manager.

The session owns its descriptor set.  Runtime and store handles passed in by
the caller are borrowed; the ones the app builds itself are closed with it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from dockform.errors import DuplicateLogicalId, SessionClosed
from dockform.models.config import DockformConfig
from dockform.models.report import Phase, ReconciliationReport
from dockform.models.resources import Descriptor, DescriptorHandle, ResourceKind
from dockform.observability.logging import get_logger
from dockform.observability.metrics import write_textfile
from dockform.reconciler.engine import Reconciler
from dockform.schema import validate_options
from dockform.state.store import FileStateStore, StateStore

if TYPE_CHECKING:
    from dockform.runtime.base import RuntimeClient

_logger = get_logger("app")


class App:
    """One reconciliation session for a named app.

    Args:
        name:    App name; keys the state store and labels managed resources.
        config:  Settings; ``DockformConfig()`` defaults when omitted.
        runtime: Runtime client; a DockerRuntimeClient is built when omitted.
        store:   State store; a FileStateStore under ``config.state.directory``
                 is built when omitted.
        phase:   ``up`` reconciles the declarations, ``plan`` only reports,
                 ``destroy`` deletes everything recorded for the app.
    """

    def __init__(
        self,
        name: str,
        *,
        config: DockformConfig | None = None,
        runtime: RuntimeClient | None = None,
        store: StateStore | None = None,
        phase: Phase = Phase.UP,
    ) -> None:
        if not name:
            raise ValueError("App name must be a non-empty string")
        self.name = name
        self.phase = phase
        self.config = config or DockformConfig()
        self._runtime = runtime
        self._owns_runtime = runtime is None
        self._store: StateStore = store or FileStateStore(self.config.state.directory, name)
        self._descriptors: dict[str, Descriptor] = {}
        self._reconciler: Reconciler | None = None
        self._opened = False
        self._finalized = False
        self._closed = False
        self._log = _logger.bind(app=name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> App:
        """Take the store lock.  Raises StoreLocked if another session has it."""
        if self._closed:
            raise SessionClosed(f"App '{self.name}' is closed")
        if not self._opened:
            await asyncio.get_running_loop().run_in_executor(None, self._store.acquire)
            self._opened = True
            self._log.debug("session opened", phase=self.phase.value)
        return self

    async def close(self) -> None:
        """Release the store lock and close the runtime the app created.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._opened:
                self._store.release()
        finally:
            if self._owns_runtime and self._runtime is not None:
                await self._runtime.close()
        self._log.debug("session closed")

    async def __aenter__(self) -> App:
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._finalized or self._closed

    @property
    def descriptors(self) -> list[Descriptor]:
        return list(self._descriptors.values())

    # ------------------------------------------------------------------
    # Declaration
    # ------------------------------------------------------------------

    def declare(
        self,
        kind: ResourceKind | str,
        logical_id: str,
        config: Mapping[str, Any] | None = None,
        *,
        depends_on: Iterable[DescriptorHandle | str] = (),
    ) -> DescriptorHandle:
        """Register a resource and return a handle other declarations can reference.

        Raises:
            SessionClosed: the session was finalized or closed.
            DuplicateLogicalId: *logical_id* is already declared.
            InvalidOption: an option is unknown or invalid for *kind*.
        """
        if self.closed:
            raise SessionClosed(f"App '{self.name}' no longer accepts declarations")
        kind = ResourceKind(kind)
        if logical_id in self._descriptors:
            raise DuplicateLogicalId(logical_id)
        normalised = validate_options(kind, logical_id, config or {})
        explicit = tuple(d.logical_id if isinstance(d, DescriptorHandle) else d for d in depends_on)
        descriptor = Descriptor.create(kind, logical_id, normalised, explicit)
        self._descriptors[logical_id] = descriptor
        self._log.debug(
            "resource declared",
            logical_id=logical_id,
            kind=kind.value,
            depends_on=sorted(descriptor.depends_on),
        )
        return descriptor.handle()

    def image(
        self, logical_id: str, *, depends_on: Iterable[DescriptorHandle | str] = (), **options: Any
    ) -> DescriptorHandle:
        return self.declare(ResourceKind.IMAGE, logical_id, options, depends_on=depends_on)

    def network(
        self, logical_id: str, *, depends_on: Iterable[DescriptorHandle | str] = (), **options: Any
    ) -> DescriptorHandle:
        return self.declare(ResourceKind.NETWORK, logical_id, options, depends_on=depends_on)

    def volume(
        self, logical_id: str, *, depends_on: Iterable[DescriptorHandle | str] = (), **options: Any
    ) -> DescriptorHandle:
        return self.declare(ResourceKind.VOLUME, logical_id, options, depends_on=depends_on)

    def container(
        self, logical_id: str, *, depends_on: Iterable[DescriptorHandle | str] = (), **options: Any
    ) -> DescriptorHandle:
        return self.declare(ResourceKind.CONTAINER, logical_id, options, depends_on=depends_on)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Ask a running finalize() to stop after the operations in flight."""
        if self._reconciler is not None:
            self._reconciler.cancel()

    async def finalize(self) -> ReconciliationReport:
        """Reconcile the declarations and close the session.  May be called once.

        Raises:
            SessionClosed: called twice or after close().
            ConfigurationError: invalid declarations; nothing was applied.
            StoreError: the state store could not be read.
        """
        if self.closed:
            raise SessionClosed(f"App '{self.name}' was already finalized")
        self._finalized = True
        try:
            await self.open()
            return await self._reconcile()
        finally:
            await self.close()

    async def _reconcile(self) -> ReconciliationReport:
        if self._runtime is None:
            from dockform.runtime.docker import DockerRuntimeClient

            self._runtime = DockerRuntimeClient(
                self.config.runtime, max_workers=self.config.reconciler.max_workers
            )

        self._reconciler = Reconciler(
            self._runtime,
            self._store,
            self.name,
            max_workers=self.config.reconciler.max_workers,
            run_timeout=self.config.reconciler.run_timeout_seconds,
        )
        report = await self._reconciler.run(self.descriptors, self.phase)

        if self.config.metrics.textfile and not report.dry_run:
            try:
                write_textfile(self.config.metrics.textfile)
            except OSError as exc:
                self._log.warning("metrics_textfile_write_failed", path=self.config.metrics.textfile, error=str(exc))
        return report
