"""State persistence for dockform.

Submodules:
    hashing -- order-independent config hash used to detect no-op runs.
    store   -- StateStore protocol, JSON file store with fcntl locking,
               in-memory store.
"""

from dockform.state.hashing import config_hash
from dockform.state.store import FileStateStore, MemoryStateStore, StateStore

__all__ = [
    "FileStateStore",
    "MemoryStateStore",
    "StateStore",
    "config_hash",
]
