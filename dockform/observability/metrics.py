"""Prometheus metrics for reconciliation runs.

dockform is a batch tool, so nothing serves these over HTTP.  When
``DOCKFORM_METRICS_TEXTFILE`` is set the registry is written after each run
in the node_exporter textfile format.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

REGISTRY = CollectorRegistry(auto_describe=True)

resource_operations_total = Counter(
    "dockform_resource_operations_total",
    "Resources processed by the reconciler, by final action.",
    ["kind", "action"],
    registry=REGISTRY,
)

runtime_errors_total = Counter(
    "dockform_runtime_errors_total",
    "Runtime client calls that failed, by error class.",
    ["kind", "error"],
    registry=REGISTRY,
)

runtime_call_seconds = Histogram(
    "dockform_runtime_call_seconds",
    "Wall-clock duration of runtime client calls.",
    ["kind", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
    registry=REGISTRY,
)

last_run_timestamp_seconds = Gauge(
    "dockform_last_run_timestamp_seconds",
    "Unix time at which the last reconciliation run of an app finished.",
    ["app"],
    registry=REGISTRY,
)


def write_textfile(path: str) -> None:
    """Dump the registry to *path* (atomically, via prometheus_client)."""
    write_to_textfile(path, REGISTRY)
