"""Deterministic configuration hashing."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from dockform.models.resources import encode_config


def canonical_json(encoded: Any) -> str:
    """Serialise an encoded config with sorted keys and no whitespace."""
    return json.dumps(encoded, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def config_hash(config: Mapping[str, Any]) -> str:
    """Hash a descriptor config, independent of mapping key order.

    References hash by logical ID, so a dependency getting a new physical ID
    does not change this hash; that case is caught through
    ``StateRecord.dependency_ids`` instead.
    """
    digest = hashlib.sha256(canonical_json(encode_config(config)).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
