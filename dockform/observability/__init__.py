"""Logging and metrics for dockform.

Submodules:
    logging  -- structlog configuration and component-bound loggers.
    metrics  -- Prometheus counters/histograms on a dedicated registry.
"""
