"""State stores: durable mapping from logical ID to StateRecord.

The store is the single source of truth for "does this logical resource
currently exist physically".  A session holds the store lock for its whole
lifetime; commits merge the given changes into the stored snapshot and are
written atomically, so a crash never leaves a half-written file.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Protocol

from dockform.errors import StateCorrupted, StoreError, StoreLocked
from dockform.models.state import TOMBSTONE, StateRecord, _Tombstone
from dockform.observability.logging import get_logger

_logger = get_logger("state.store")

SCHEMA_VERSION = 1

Changes = Mapping[str, StateRecord | _Tombstone]


class StateStore(Protocol):
    """Contract every state store implements."""

    app: str

    def acquire(self) -> None:
        """Take the exclusive session lock or raise StoreLocked at once."""
        ...

    def release(self) -> None:
        """Release the session lock.  Safe to call when not held."""
        ...

    def load(self) -> dict[str, StateRecord]:
        """Return every record; an empty mapping when nothing was stored yet."""
        ...

    def commit(self, changes: Changes) -> None:
        """Apply creates/updates (records) and removals (TOMBSTONE) atomically."""
        ...


def _apply_changes(records: dict[str, StateRecord], changes: Changes) -> dict[str, StateRecord]:
    merged = dict(records)
    for logical_id, change in changes.items():
        if change is TOMBSTONE:
            merged.pop(logical_id, None)
        elif isinstance(change, StateRecord):
            if change.logical_id != logical_id:
                raise StoreError(f"Record for '{change.logical_id}' committed under key '{logical_id}'")
            merged[logical_id] = change
        else:
            raise StoreError(f"Unsupported change for '{logical_id}': {change!r}")
    return merged


class FileStateStore:
    """JSON file store with an fcntl session lock.

    Layout under *directory*::

        <app>.state.json   {"app", "schema_version", "updated_at", "records": {...}}
        <app>.lock         holds the pid of the locking process
    """

    def __init__(self, directory: Path | str, app: str) -> None:
        self.app = app
        self.directory = Path(directory)
        self.path = self.directory / f"{app}.state.json"
        self.lock_path = self.directory / f"{app}.lock"
        self._lock_file: IO[str] | None = None
        self._snapshot: dict[str, StateRecord] | None = None

    @property
    def locked(self) -> bool:
        return self._lock_file is not None

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        if self._lock_file is not None:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        lock_file = open(self.lock_path, "a+")  # noqa: SIM115
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            lock_file.seek(0)
            holder = lock_file.read().strip()
            lock_file.close()
            raise StoreLocked(self.app, holder=f"pid {holder}" if holder else "") from exc
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(str(os.getpid()))
        lock_file.flush()
        self._lock_file = lock_file
        _logger.debug("state lock acquired", app=self.app, path=str(self.lock_path))

    def release(self) -> None:
        lock_file, self._lock_file = self._lock_file, None
        if lock_file is None:
            return
        try:
            lock_file.seek(0)
            lock_file.truncate()
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()
        self._snapshot = None
        _logger.debug("state lock released", app=self.app)

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def load(self) -> dict[str, StateRecord]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._snapshot = {}
            return {}
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorrupted(f"State file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(document, dict) or document.get("schema_version") != SCHEMA_VERSION:
            raise StateCorrupted(f"State file {self.path} has an unsupported schema")
        if document.get("app") != self.app:
            raise StateCorrupted(f"State file {self.path} belongs to app {document.get('app')!r}")
        try:
            records = {
                lid: StateRecord.from_dict(data) for lid, data in (document.get("records") or {}).items()
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise StateCorrupted(f"State file {self.path} has an invalid record: {exc}") from exc
        self._snapshot = dict(records)
        return records

    def commit(self, changes: Changes) -> None:
        if self._lock_file is None:
            raise StoreError(f"Commit to '{self.app}' without holding the store lock")
        if self._snapshot is None:
            self.load()
        assert self._snapshot is not None
        merged = _apply_changes(self._snapshot, changes)
        self._write(merged)
        self._snapshot = merged
        _logger.debug("state committed", app=self.app, changes=len(changes), records=len(merged))

    def _write(self, records: dict[str, StateRecord]) -> None:
        document = {
            "app": self.app,
            "schema_version": SCHEMA_VERSION,
            "updated_at": datetime.now(tz=UTC).isoformat(),
            "records": {lid: records[lid].to_dict() for lid in sorted(records)},
        }
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.app}.", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class MemoryStateStore:
    """In-process store with the same contract; state lives as long as the object."""

    _held: set[str] = set()
    _held_guard = threading.Lock()

    def __init__(self, app: str, records: Mapping[str, StateRecord] | None = None) -> None:
        self.app = app
        self._records: dict[str, StateRecord] = dict(records or {})
        self._locked = False
        self.commits = 0

    @property
    def locked(self) -> bool:
        return self._locked

    def acquire(self) -> None:
        if self._locked:
            return
        with self._held_guard:
            if self.app in self._held:
                raise StoreLocked(self.app)
            self._held.add(self.app)
        self._locked = True

    def release(self) -> None:
        if not self._locked:
            return
        with self._held_guard:
            self._held.discard(self.app)
        self._locked = False

    def load(self) -> dict[str, StateRecord]:
        return dict(self._records)

    def commit(self, changes: Changes) -> None:
        if not self._locked:
            raise StoreError(f"Commit to '{self.app}' without holding the store lock")
        self._records = _apply_changes(self._records, changes)
        self.commits += 1
