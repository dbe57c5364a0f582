"""Resource descriptors and the values that can appear inside their config."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ResourceKind(StrEnum):
    """Kinds of resources the engine knows about."""

    IMAGE = "image"
    CONTAINER = "container"
    NETWORK = "network"
    VOLUME = "volume"
    MOUNT = "mount"


@dataclass(frozen=True)
class Ref:
    """Explicit reference to another declared resource.

    ``kind`` is optional: when set, graph construction checks that the
    target was declared with that kind.
    """

    logical_id: str
    kind: ResourceKind | None = None

    def __str__(self) -> str:
        return f"ref({self.logical_id})"


def ref(logical_id: str, kind: ResourceKind | str | None = None) -> Ref:
    """Build a reference by ID, e.g. to a resource declared later."""
    return Ref(logical_id, ResourceKind(kind) if kind is not None else None)


@dataclass(frozen=True)
class DescriptorHandle:
    """Returned by ``App.declare``; usable wherever a Ref is accepted.

    ``name`` is the static physical name, known at declaration time, so it
    can be embedded in strings such as connection URLs.
    """

    logical_id: str
    kind: ResourceKind
    name: str

    @property
    def ref(self) -> Ref:
        return Ref(self.logical_id, self.kind)

    # Upper-case alias mirrors the `network.Name` idiom of the declaration files.
    @property
    def Name(self) -> str:  # noqa: N802
        return self.name


class MountType(StrEnum):
    BIND = "bind"
    VOLUME = "volume"


@dataclass(frozen=True)
class Mount:
    """A mount attached inline to a container; never reconciled on its own."""

    type: MountType
    source: str | Ref
    read_only: bool = False

    @classmethod
    def bind(cls, source: str, read_only: bool = False) -> Mount:
        return cls(MountType.BIND, source, read_only)

    @classmethod
    def volume(cls, volume: DescriptorHandle | Ref | str, read_only: bool = False) -> Mount:
        if isinstance(volume, DescriptorHandle):
            volume = volume.ref
        return cls(MountType.VOLUME, volume, read_only)


@dataclass(frozen=True)
class Descriptor:
    """Immutable declaration of a desired resource.

    ``references`` holds every ``(field, Ref)`` found in config; ``depends_on``
    is their logical IDs plus any explicit dependencies.
    """

    kind: ResourceKind
    logical_id: str
    config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    depends_on: frozenset[str] = frozenset()
    references: tuple[tuple[str, Ref], ...] = ()

    @classmethod
    def create(
        cls,
        kind: ResourceKind,
        logical_id: str,
        config: Mapping[str, Any],
        depends_on: tuple[str, ...] | frozenset[str] = (),
    ) -> Descriptor:
        references = tuple(collect_references(config))
        deps = frozenset(r.logical_id for _, r in references) | frozenset(depends_on)
        return cls(
            kind=kind,
            logical_id=logical_id,
            config=MappingProxyType(dict(config)),
            depends_on=deps,
            references=references,
        )

    @property
    def name(self) -> str:
        return str(self.config.get("name") or self.logical_id)

    def handle(self) -> DescriptorHandle:
        return DescriptorHandle(self.logical_id, self.kind, self.name)


# ---------------------------------------------------------------------------
# Config traversal
# ---------------------------------------------------------------------------


def collect_references(config: Mapping[str, Any]) -> Iterator[tuple[str, Ref]]:
    """Yield ``(top-level field, Ref)`` for every reference in *config*."""
    for key, value in config.items():
        for found in _walk_refs(value):
            yield str(key), found


def _walk_refs(value: Any) -> Iterator[Ref]:
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Mount):
        if isinstance(value.source, Ref):
            yield value.source
    elif isinstance(value, Mapping):
        for k, v in value.items():
            if isinstance(k, Ref):
                yield k
            yield from _walk_refs(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_refs(item)


def encode_config(value: Any) -> Any:
    """Return the canonical JSON-compatible form of a config value.

    Used both for hashing and for persisting the applied config.
    """
    if isinstance(value, Ref):
        return {"$ref": value.logical_id}
    if isinstance(value, Mount):
        source = {"$ref": value.source.logical_id} if isinstance(value.source, Ref) else value.source
        return {"$mount": {"type": value.type.value, "source": source, "read_only": value.read_only}}
    if isinstance(value, Mapping):
        return {_encode_key(k): encode_config(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_config(v) for v in value]
    if isinstance(value, StrEnum):
        return value.value
    return value


def _encode_key(key: Any) -> str:
    if isinstance(key, Ref):
        return f"$ref:{key.logical_id}"
    return str(key)


def resolve_config(value: Any, lookup: Callable[[str], str]) -> Any:
    """Replace every Ref in *value* with ``lookup(logical_id)``.

    Mounts keep their type; a volume mount's source becomes the physical ID.
    """
    if isinstance(value, Ref):
        return lookup(value.logical_id)
    if isinstance(value, Mount):
        if isinstance(value.source, Ref):
            return Mount(value.type, lookup(value.source.logical_id), value.read_only)
        return value
    if isinstance(value, Mapping):
        return {
            (lookup(k.logical_id) if isinstance(k, Ref) else k): resolve_config(v, lookup)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [resolve_config(v, lookup) for v in value]
    return value


def changed_fields(old: Mapping[str, Any], new: Mapping[str, Any]) -> frozenset[str]:
    """Top-level option names whose encoded values differ."""
    keys = set(old) | set(new)
    return frozenset(k for k in keys if old.get(k) != new.get(k))
