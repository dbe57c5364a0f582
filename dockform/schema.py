"""Recognised options per resource kind.

Every option a caller may pass to ``App.declare`` is listed here with a
validator that normalises its value.  Unknown options and invalid values
raise InvalidOption at declaration time, before anything touches the runtime.

Normalisation rules worth knowing:
    * handles become Refs (``container.image``, ``networking`` keys, volumes)
    * container ``volumes`` values all become Mount instances
    * bind sources and build contexts become absolute paths
    * ``ports`` keys become ``"<port>/<proto>"`` strings
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from typing import Any

from dockform.errors import ConfigurationError, InvalidOption
from dockform.models.resources import DescriptorHandle, Mount, MountType, Ref, ResourceKind

_Validator = Callable[[str, str, Any], Any]

_RE_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
_RE_DURATION = re.compile(r"^([0-9]+(?:\.[0-9]+)?)(ms|s|m|h)$")
_RE_RESTART = re.compile(r"^(no|always|unless-stopped|on-failure(:[0-9]+)?)$")
_RE_PORT = re.compile(r"^([0-9]{1,5})(/(tcp|udp|sctp))?$")
_PORT_RANGE = range(1, 65536)

_DURATION_UNITS_NS = {"ms": 1_000_000, "s": 1_000_000_000, "m": 60_000_000_000, "h": 3_600_000_000_000}


def parse_duration(value: str | int | float) -> int:
    """Convert ``"10s"``, ``"500ms"``, ``"1m"`` or plain seconds to nanoseconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Invalid duration: {value!r}")
        return int(value * 1_000_000_000)
    match = _RE_DURATION.match(value.strip())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    return int(float(match.group(1)) * _DURATION_UNITS_NS[match.group(2)])


# ---------------------------------------------------------------------------
# Scalar validators
# ---------------------------------------------------------------------------


def _string(logical_id: str, option: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidOption(logical_id, option, "must be a non-empty string")
    return value


def _name(logical_id: str, option: str, value: Any) -> str:
    value = _string(logical_id, option, value)
    if not _RE_NAME.match(value):
        raise InvalidOption(logical_id, option, f"invalid name {value!r}")
    return value


def _bool(logical_id: str, option: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidOption(logical_id, option, "must be a boolean")
    return value


def _string_map(logical_id: str, option: str, value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise InvalidOption(logical_id, option, "must be a mapping of strings")
    result: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise InvalidOption(logical_id, option, f"key {key!r} must be a string")
        if isinstance(item, bool):
            result[key] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            result[key] = str(item)
        else:
            raise InvalidOption(logical_id, option, f"value for {key!r} must be a scalar")
    return result


def _command(logical_id: str, option: str, value: Any) -> str | list[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise InvalidOption(logical_id, option, "must be a string or a list of strings")


def _choice(*choices: str) -> _Validator:
    def validate(logical_id: str, option: str, value: Any) -> str:
        if value not in choices:
            raise InvalidOption(logical_id, option, f"must be one of {', '.join(choices)}")
        return str(value)

    return validate


def _duration(logical_id: str, option: str, value: Any) -> str | int | float:
    try:
        parse_duration(value)
    except (ValueError, TypeError, AttributeError) as exc:
        raise InvalidOption(logical_id, option, str(exc)) from exc
    return value


# ---------------------------------------------------------------------------
# Reference-bearing validators
# ---------------------------------------------------------------------------


def _as_ref(value: Any, kind: ResourceKind) -> Ref | None:
    if isinstance(value, DescriptorHandle):
        return value.ref
    if isinstance(value, Ref):
        return value if value.kind is not None else Ref(value.logical_id, kind)
    return None


def _image_ref(logical_id: str, option: str, value: Any) -> Ref | str:
    found = _as_ref(value, ResourceKind.IMAGE)
    if found is not None:
        return found
    return _string(logical_id, option, value)


def _networking(logical_id: str, option: str, value: Any) -> dict[Ref | str, dict[str, Any]]:
    if isinstance(value, (list, tuple)):
        value = {item: {} for item in value}
    if not isinstance(value, Mapping):
        raise InvalidOption(logical_id, option, "must map networks to attach options")
    result: dict[Ref | str, dict[str, Any]] = {}
    for key, opts in value.items():
        network = _as_ref(key, ResourceKind.NETWORK)
        if network is None:
            network = _string(logical_id, option, key)
        if opts is None:
            opts = {}
        if not isinstance(opts, Mapping):
            raise InvalidOption(logical_id, option, f"attach options for {key!r} must be a mapping")
        opts = dict(opts)
        unknown = set(opts) - {"aliases", "ipv4_address"}
        if unknown:
            raise InvalidOption(logical_id, option, f"unknown attach options {sorted(unknown)}")
        if "aliases" in opts:
            opts["aliases"] = _command(logical_id, f"{option}.aliases", opts["aliases"])
        result[network] = opts
    return result


def _volumes(logical_id: str, option: str, value: Any) -> dict[str, Mount]:
    if not isinstance(value, Mapping):
        raise InvalidOption(logical_id, option, "must map container paths to volumes or mounts")
    result: dict[str, Mount] = {}
    for target, source in value.items():
        if not isinstance(target, str) or not target.startswith("/"):
            raise InvalidOption(logical_id, option, f"target {target!r} must be an absolute path")
        result[target] = _mount(logical_id, option, source)
    return result


def _mount(logical_id: str, option: str, source: Any) -> Mount:
    volume = _as_ref(source, ResourceKind.VOLUME)
    if volume is not None:
        return Mount(MountType.VOLUME, volume)
    if isinstance(source, Mount):
        if source.type == MountType.BIND:
            return Mount(MountType.BIND, os.path.abspath(str(source.source)), source.read_only)
        ref_source = _as_ref(source.source, ResourceKind.VOLUME)
        return Mount(MountType.VOLUME, ref_source or source.source, source.read_only)
    if isinstance(source, str) and source:
        if source.startswith(("/", ".", "~")):
            return Mount(MountType.BIND, os.path.abspath(os.path.expanduser(source)))
        # a bare name refers to an unmanaged, pre-existing volume
        return Mount(MountType.VOLUME, source)
    raise InvalidOption(logical_id, option, f"unsupported mount source {source!r}")


def _ports(logical_id: str, option: str, value: Any) -> dict[str, int | list[Any] | None]:
    if not isinstance(value, Mapping):
        raise InvalidOption(logical_id, option, "must map container ports to host ports")
    result: dict[str, int | list[Any] | None] = {}
    for container_port, host in value.items():
        key = str(container_port)
        match = _RE_PORT.match(key)
        if not match or int(match.group(1)) not in _PORT_RANGE:
            raise InvalidOption(logical_id, option, f"invalid container port {container_port!r}")
        if "/" not in key:
            key = f"{key}/tcp"
        result[key] = _host_binding(logical_id, option, host)
    return result


def _host_binding(logical_id: str, option: str, host: Any) -> int | list[Any] | None:
    if host is None:
        return None
    if isinstance(host, int) and not isinstance(host, bool):
        if host in _PORT_RANGE:
            return host
    elif isinstance(host, str):
        if host.isdigit() and int(host) in _PORT_RANGE:
            return int(host)
        address, _, port = host.rpartition(":")
        if address and port.isdigit() and int(port) in _PORT_RANGE:
            return [address, int(port)]
    raise InvalidOption(logical_id, option, f"invalid host binding {host!r}")


def _healthcheck(logical_id: str, option: str, value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise InvalidOption(logical_id, option, "must be a mapping")
    unknown = set(value) - {"test", "interval", "timeout", "retries", "start_period"}
    if unknown:
        raise InvalidOption(logical_id, option, f"unknown keys {sorted(unknown)}")
    if "test" not in value:
        raise InvalidOption(logical_id, option, "'test' is required")
    result: dict[str, Any] = {"test": _command(logical_id, f"{option}.test", value["test"])}
    for key in ("interval", "timeout", "start_period"):
        if key in value:
            result[key] = _duration(logical_id, f"{option}.{key}", value[key])
    if "retries" in value:
        retries = value["retries"]
        if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
            raise InvalidOption(logical_id, f"{option}.retries", "must be a non-negative integer")
        result["retries"] = retries
    return result


def _restart(logical_id: str, option: str, value: Any) -> str:
    if not isinstance(value, str) or not _RE_RESTART.match(value):
        raise InvalidOption(logical_id, option, "must be no, always, unless-stopped or on-failure[:N]")
    return value


def _build(logical_id: str, option: str, value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise InvalidOption(logical_id, option, "must be a mapping")
    unknown = set(value) - {"context", "dockerfile", "args", "target"}
    if unknown:
        raise InvalidOption(logical_id, option, f"unknown keys {sorted(unknown)}")
    if "context" not in value:
        raise InvalidOption(logical_id, option, "'context' is required")
    result: dict[str, Any] = {"context": os.path.abspath(_string(logical_id, f"{option}.context", value["context"]))}
    if "dockerfile" in value:
        result["dockerfile"] = _string(logical_id, f"{option}.dockerfile", value["dockerfile"])
    if "args" in value:
        result["args"] = _string_map(logical_id, f"{option}.args", value["args"])
    if "target" in value:
        result["target"] = _string(logical_id, f"{option}.target", value["target"])
    return result


# ---------------------------------------------------------------------------
# Option tables
# ---------------------------------------------------------------------------

OPTIONS: dict[ResourceKind, dict[str, _Validator]] = {
    ResourceKind.IMAGE: {
        "ref": _string,
        "build": _build,
        "pull": _choice("missing", "always", "never"),
        "platform": _string,
    },
    ResourceKind.NETWORK: {
        "name": _name,
        "driver": _string,
        "internal": _bool,
        "attachable": _bool,
        "enable_ipv6": _bool,
        "labels": _string_map,
        "options": _string_map,
    },
    ResourceKind.VOLUME: {
        "name": _name,
        "driver": _string,
        "driver_opts": _string_map,
        "labels": _string_map,
    },
    ResourceKind.CONTAINER: {
        "image": _image_ref,
        "name": _name,
        "command": _command,
        "entrypoint": _command,
        "environment": _string_map,
        "ports": _ports,
        "volumes": _volumes,
        "networking": _networking,
        "labels": _string_map,
        "healthcheck": _healthcheck,
        "restart": _restart,
        "status": _choice("running", "stopped"),
        "working_dir": _string,
        "user": _string,
        "hostname": _string,
    },
}

REQUIRED: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.IMAGE: frozenset({"ref"}),
    ResourceKind.CONTAINER: frozenset({"image"}),
}

# Fields whose references must point at a specific kind.
REFERENCE_KINDS: dict[tuple[ResourceKind, str], ResourceKind] = {
    (ResourceKind.CONTAINER, "image"): ResourceKind.IMAGE,
    (ResourceKind.CONTAINER, "networking"): ResourceKind.NETWORK,
    (ResourceKind.CONTAINER, "volumes"): ResourceKind.VOLUME,
}


def validate_options(kind: ResourceKind, logical_id: str, config: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalise *config* for a resource of *kind*.

    Raises:
        ConfigurationError: for a kind that cannot be declared on its own.
        InvalidOption: for unknown options, missing required options or bad values.
    """
    if not isinstance(logical_id, str) or not logical_id:
        raise ConfigurationError("logical_id must be a non-empty string")
    if kind == ResourceKind.MOUNT:
        raise ConfigurationError(
            f"Resource '{logical_id}': mounts are declared inline in a container's 'volumes'"
        )
    table = OPTIONS[kind]
    normalised: dict[str, Any] = {}
    for option, value in config.items():
        validator = table.get(option)
        if validator is None:
            raise InvalidOption(logical_id, option, f"unknown option for {kind.value}")
        normalised[option] = validator(logical_id, option, value)
    for option in sorted(REQUIRED.get(kind, frozenset()) - set(normalised)):
        raise InvalidOption(logical_id, option, "is required")
    return normalised
