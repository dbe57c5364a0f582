"""Docker implementation of the RuntimeClient.

One operation group per kind (ImageOperations, NetworkOperations,
VolumeOperations, ContainerOperations) holds the synchronous docker SDK
calls.  DockerRuntimeClient runs them in a bounded thread pool so the event
loop is never blocked, translates docker/requests exceptions into the
dockform taxonomy and records call metrics.

Ensure is idempotent by name: an object that already carries this app's
labels for the same logical ID is adopted when its config-hash label
matches, and replaced otherwise.  That covers a crash between a successful
runtime call and the state commit.
"""

from __future__ import annotations

import asyncio
import functools
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

import docker
import docker.types
import requests
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from dockform.errors import (
    DriftDetected,
    RequiresRecreate,
    RuntimeClientError,
    RuntimeRejected,
    RuntimeUnavailable,
)
from dockform.models.config import RuntimeConfig
from dockform.models.resources import Mount, ResourceKind
from dockform.observability.logging import get_logger
from dockform.observability.metrics import runtime_call_seconds, runtime_errors_total
from dockform.runtime.base import (
    LABEL_APP,
    LABEL_CONFIG_HASH,
    LABEL_LOGICAL_ID,
    PhysicalState,
    ResolvedResource,
    RuntimeClient,
    UpdatePolicy,
)
from dockform.schema import parse_duration

_logger = get_logger("runtime.docker")

_T = TypeVar("_T")

ClientFactory = Callable[[], docker.DockerClient]


class KindOperations(ABC):
    """Synchronous docker SDK calls for one resource kind."""

    kind: ResourceKind
    in_place_fields: frozenset[str] = frozenset()

    def __init__(self, client: ClientFactory) -> None:
        self._client = client

    @abstractmethod
    def ensure(self, resource: ResolvedResource) -> str:
        """Create or adopt the object and return its ID."""

    @abstractmethod
    def inspect(self, physical_id: str) -> PhysicalState | None:
        """Return the object's state, or None when it does not exist."""

    @abstractmethod
    def remove(self, physical_id: str) -> None:
        """Remove the object; a missing object is not an error."""

    def update(self, resource: ResolvedResource, physical_id: str, changed: frozenset[str]) -> str:
        raise RequiresRecreate(f"{self.kind.value} cannot be updated in place", resource.logical_id)

    def policy(self, changed: frozenset[str]) -> UpdatePolicy:
        if changed and changed <= self.in_place_fields:
            return UpdatePolicy.IN_PLACE
        return UpdatePolicy.RECREATE

    def _adoptable(self, labels: dict[str, str] | None, resource: ResolvedResource) -> bool:
        """True if an existing same-named object can be reused as is.

        Raises RuntimeRejected when the object is not ours; returns False when
        it is ours but stale (the caller replaces it).
        """
        labels = labels or {}
        if labels.get(LABEL_APP) != resource.app or labels.get(LABEL_LOGICAL_ID) != resource.logical_id:
            raise RuntimeRejected(
                f"A {self.kind.value} named '{resource.name}' already exists and is not managed "
                f"by app '{resource.app}'",
                resource.logical_id,
            )
        return labels.get(LABEL_CONFIG_HASH) == resource.config_hash


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class ImageOperations(KindOperations):
    """Images are content addressed: the physical ID is the image ID.

    They are never updated in place and never removed, since the local image
    cache is shared with everything else on the host.
    """

    kind = ResourceKind.IMAGE

    def ensure(self, resource: ResolvedResource) -> str:
        cfg = resource.config
        reference = str(cfg["ref"])
        client = self._client()

        if "build" in cfg:
            build = cfg["build"]
            _logger.info("image_build", logical_id=resource.logical_id, ref=reference, context=build["context"])
            image, logs = client.images.build(
                path=build["context"],
                dockerfile=build.get("dockerfile"),
                buildargs=build.get("args"),
                target=build.get("target"),
                platform=cfg.get("platform"),
                tag=reference,
                labels={LABEL_APP: resource.app, LABEL_LOGICAL_ID: resource.logical_id},
                rm=True,
            )
            for chunk in logs:
                if "stream" in chunk:
                    _logger.debug("image_build_output", line=str(chunk["stream"]).strip())
            return str(image.id)

        pull = cfg.get("pull", "missing")
        if pull != "always":
            try:
                return str(client.images.get(reference).id)
            except ImageNotFound:
                if pull == "never":
                    raise RuntimeRejected(
                        f"Image '{reference}' is not present locally and pull is 'never'",
                        resource.logical_id,
                    ) from None
        _logger.info("image_pull", logical_id=resource.logical_id, ref=reference)
        image = client.images.pull(reference, platform=cfg.get("platform"))
        return str(image.id)

    def inspect(self, physical_id: str) -> PhysicalState | None:
        try:
            image = self._client().images.get(physical_id)
        except ImageNotFound:
            return None
        return PhysicalState(self.kind, str(image.id), status="present", labels=dict(image.labels or {}))

    def remove(self, physical_id: str) -> None:
        _logger.debug("image_kept_in_cache", physical_id=physical_id)


# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------


class NetworkOperations(KindOperations):
    """Networks are created once; any change means recreate."""

    kind = ResourceKind.NETWORK

    def ensure(self, resource: ResolvedResource) -> str:
        cfg = resource.config
        client = self._client()
        for existing in client.networks.list(names=[resource.name]):
            if existing.name != resource.name:
                continue
            if self._adoptable(existing.attrs.get("Labels"), resource):
                _logger.info("network_adopted", logical_id=resource.logical_id, physical_id=existing.id)
                return str(existing.id)
            existing.remove()

        network = client.networks.create(
            resource.name,
            driver=cfg.get("driver", "bridge"),
            internal=cfg.get("internal", False),
            attachable=cfg.get("attachable", False),
            enable_ipv6=cfg.get("enable_ipv6", False),
            options=cfg.get("options"),
            labels=resource.labels(),
        )
        return str(network.id)

    def inspect(self, physical_id: str) -> PhysicalState | None:
        try:
            network = self._client().networks.get(physical_id)
        except NotFound:
            return None
        return PhysicalState(self.kind, str(network.id), labels=dict(network.attrs.get("Labels") or {}))

    def remove(self, physical_id: str) -> None:
        try:
            self._client().networks.get(physical_id).remove()
        except NotFound:
            _logger.debug("network_already_absent", physical_id=physical_id)


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------


class VolumeOperations(KindOperations):
    """Volumes are identified by name; any change means recreate."""

    kind = ResourceKind.VOLUME

    def ensure(self, resource: ResolvedResource) -> str:
        cfg = resource.config
        client = self._client()
        try:
            existing = client.volumes.get(resource.name)
        except NotFound:
            existing = None
        if existing is not None:
            if self._adoptable(existing.attrs.get("Labels"), resource):
                _logger.info("volume_adopted", logical_id=resource.logical_id, physical_id=existing.id)
                return str(existing.id)
            existing.remove()

        volume = client.volumes.create(
            name=resource.name,
            driver=cfg.get("driver", "local"),
            driver_opts=cfg.get("driver_opts"),
            labels=resource.labels(),
        )
        return str(volume.id)

    def inspect(self, physical_id: str) -> PhysicalState | None:
        try:
            volume = self._client().volumes.get(physical_id)
        except NotFound:
            return None
        return PhysicalState(self.kind, str(volume.id), labels=dict(volume.attrs.get("Labels") or {}))

    def remove(self, physical_id: str) -> None:
        try:
            self._client().volumes.get(physical_id).remove()
        except NotFound:
            _logger.debug("volume_already_absent", physical_id=physical_id)


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


def _restart_policy(value: str | None) -> dict[str, Any]:
    name, _, retries = (value or "no").partition(":")
    policy: dict[str, Any] = {"Name": name}
    if retries:
        policy["MaximumRetryCount"] = int(retries)
    return policy


def _healthcheck(spec: dict[str, Any]) -> dict[str, Any]:
    test = spec["test"]
    result: dict[str, Any] = {"test": ["CMD-SHELL", test] if isinstance(test, str) else list(test)}
    for key in ("interval", "timeout", "start_period"):
        if key in spec:
            result[key] = parse_duration(spec[key])
    if "retries" in spec:
        result["retries"] = spec["retries"]
    return result


def _mounts(volumes: dict[str, Mount]) -> list[docker.types.Mount]:
    """One mount per target path; a source may back several targets."""
    return [
        docker.types.Mount(target=target, source=str(mount.source), type=mount.type.value, read_only=mount.read_only)
        for target, mount in volumes.items()
    ]


def _ports(ports: dict[str, Any]) -> dict[str, Any]:
    return {port: tuple(host) if isinstance(host, list) else host for port, host in ports.items()}


class ContainerOperations(KindOperations):
    """Restart policy and run status change in place; everything else recreates."""

    kind = ResourceKind.CONTAINER
    in_place_fields = frozenset({"restart", "status"})

    def ensure(self, resource: ResolvedResource) -> str:
        cfg = resource.config
        client = self._client()
        try:
            existing = client.containers.get(resource.name)
        except NotFound:
            existing = None
        if existing is not None:
            if self._adoptable(existing.labels, resource):
                _logger.info("container_adopted", logical_id=resource.logical_id, physical_id=existing.id)
                if cfg.get("status", "running") == "running" and existing.status != "running":
                    existing.start()
                return str(existing.id)
            existing.remove(force=True)

        image = str(cfg["image"])
        try:
            client.images.get(image)
        except ImageNotFound:
            # plain reference string, not managed as an image resource
            _logger.info("image_pull", logical_id=resource.logical_id, ref=image)
            client.images.pull(image)

        networks = list((cfg.get("networking") or {}).items())
        kwargs: dict[str, Any] = {
            "name": resource.name,
            "labels": resource.labels(),
            "detach": True,
        }
        for option in ("command", "entrypoint", "environment", "working_dir", "user", "hostname"):
            if option in cfg:
                kwargs[option] = cfg[option]
        if "ports" in cfg:
            kwargs["ports"] = _ports(cfg["ports"])
        if "volumes" in cfg:
            kwargs["mounts"] = _mounts(cfg["volumes"])
        if "healthcheck" in cfg:
            kwargs["healthcheck"] = _healthcheck(cfg["healthcheck"])
        if "restart" in cfg:
            kwargs["restart_policy"] = _restart_policy(cfg["restart"])
        if networks:
            first, first_opts = networks[0]
            kwargs["network"] = first
            if first_opts:
                kwargs["networking_config"] = {first: client.api.create_endpoint_config(**first_opts)}

        container = client.containers.create(image, **kwargs)
        for network_id, opts in networks[1:]:
            client.networks.get(network_id).connect(container, **opts)
        if cfg.get("status", "running") == "running":
            container.start()
        return str(container.id)

    def inspect(self, physical_id: str) -> PhysicalState | None:
        try:
            container = self._client().containers.get(physical_id)
        except NotFound:
            return None
        return PhysicalState(self.kind, str(container.id), status=container.status, labels=dict(container.labels))

    def update(self, resource: ResolvedResource, physical_id: str, changed: frozenset[str]) -> str:
        if not changed <= self.in_place_fields:
            raise RequiresRecreate(
                f"container fields {sorted(changed - self.in_place_fields)} require recreate",
                resource.logical_id,
            )
        try:
            container = self._client().containers.get(physical_id)
        except NotFound:
            raise DriftDetected(f"container {physical_id} vanished", resource.logical_id) from None
        cfg = resource.config
        if "restart" in changed:
            container.update(restart_policy=_restart_policy(cfg.get("restart")))
        if "status" in changed:
            if cfg.get("status", "running") == "running":
                container.start()
            else:
                container.stop()
        return str(container.id)

    def remove(self, physical_id: str) -> None:
        try:
            self._client().containers.get(physical_id).remove(force=True)
        except NotFound:
            _logger.debug("container_already_absent", physical_id=physical_id)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def translate_error(exc: Exception, logical_id: str | None = None) -> RuntimeClientError:
    """Map a docker SDK / requests exception onto the dockform taxonomy."""
    if isinstance(exc, NotFound):
        return RuntimeRejected(f"Not found: {exc}", logical_id)
    if isinstance(exc, APIError):
        if exc.is_server_error():
            return RuntimeUnavailable(f"Docker daemon error: {exc}", logical_id)
        return RuntimeRejected(f"Docker refused the request: {exc}", logical_id)
    if isinstance(exc, BuildError):
        return RuntimeRejected(f"Image build failed: {exc}", logical_id)
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return RuntimeUnavailable(f"Docker daemon unreachable: {exc}", logical_id)
    return RuntimeUnavailable(f"Docker client error: {exc}", logical_id)


class DockerRuntimeClient(RuntimeClient):
    """RuntimeClient backed by the docker SDK.

    Args:
        config:      Connection settings; ``docker_host`` empty means
                     ``docker.from_env()``.
        client:      Pre-built DockerClient (tests inject a mock here).
        max_workers: Size of the thread pool running SDK calls.
    """

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        client: docker.DockerClient | None = None,
        max_workers: int = 4,
    ) -> None:
        self._config = config or RuntimeConfig()
        self._client: docker.DockerClient | None = client
        self._client_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dockform-runtime")
        self._operations: dict[ResourceKind, KindOperations] = {
            ops.kind: ops
            for ops in (
                ImageOperations(self._docker),
                NetworkOperations(self._docker),
                VolumeOperations(self._docker),
                ContainerOperations(self._docker),
            )
        }

    def _docker(self) -> docker.DockerClient:
        """Create the SDK client on first use (runs in a worker thread)."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    if self._config.docker_host:
                        self._client = docker.DockerClient(
                            base_url=self._config.docker_host,
                            timeout=self._config.timeout_seconds,
                        )
                    else:
                        self._client = docker.from_env(timeout=self._config.timeout_seconds)
                    _logger.info("docker client connected", host=self._config.docker_host or "env")
        return self._client

    def operations(self, kind: ResourceKind) -> KindOperations:
        try:
            return self._operations[kind]
        except KeyError:
            raise RuntimeRejected(f"Resource kind '{kind.value}' is not managed by the runtime") from None

    async def _call(
        self,
        kind: ResourceKind,
        operation: str,
        fn: Callable[..., _T],
        *args: Any,
        logical_id: str | None = None,
    ) -> _T:
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        try:
            return await loop.run_in_executor(self._executor, functools.partial(fn, *args))
        except RuntimeClientError as exc:
            runtime_errors_total.labels(kind=kind.value, error=type(exc).__name__).inc()
            raise
        except (DockerException, requests.exceptions.RequestException) as exc:
            translated = translate_error(exc, logical_id)
            runtime_errors_total.labels(kind=kind.value, error=type(translated).__name__).inc()
            _logger.warning(
                "runtime_call_failed",
                kind=kind.value,
                operation=operation,
                logical_id=logical_id,
                error=str(exc),
            )
            raise translated from exc
        finally:
            runtime_call_seconds.labels(kind=kind.value, operation=operation).observe(time.monotonic() - started)

    async def ensure(self, resource: ResolvedResource) -> str:
        ops = self.operations(resource.kind)
        return await self._call(resource.kind, "ensure", ops.ensure, resource, logical_id=resource.logical_id)

    async def inspect(self, kind: ResourceKind, physical_id: str) -> PhysicalState | None:
        ops = self.operations(kind)
        return await self._call(kind, "inspect", ops.inspect, physical_id)

    async def update(self, resource: ResolvedResource, physical_id: str, changed: frozenset[str]) -> str:
        ops = self.operations(resource.kind)
        return await self._call(
            resource.kind, "update", ops.update, resource, physical_id, changed, logical_id=resource.logical_id
        )

    async def remove(self, kind: ResourceKind, physical_id: str) -> None:
        ops = self.operations(kind)
        await self._call(kind, "remove", ops.remove, physical_id)

    def update_policy(self, kind: ResourceKind, changed: frozenset[str]) -> UpdatePolicy:
        return self.operations(kind).policy(changed)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await asyncio.get_running_loop().run_in_executor(self._executor, client.close)
        self._executor.shutdown(wait=False)
