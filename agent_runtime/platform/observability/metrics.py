"""Prometheus metric helpers shared by the runtime.

Provides the standard histogram buckets and factories so every duration
metric in the runtime is bucketed the same way.
"""

import prometheus_client

BUCKETS = (
    # log spaced with 1 sig-fig rounding, 3 per decade
    0.005,
    0.01,
    0.02,
    0.05,
    0.1,
    0.2,
    0.5,
    1,
    2,
    5,
    10,
    20,
    50,
    100,
    200,
    500,  # long agent runs
    float("inf"),
)


def _registered(registry, name, error):
    # prometheus_client keeps no public lookup by name
    existing = registry._names_to_collectors.get(name)
    if existing is None:
        raise error
    return existing


def setup_metrics_factory(registry, name, documentation, labelnames):
    """Create a Prometheus histogram with standard bucket configuration.

    A histogram already registered under ``name`` is returned as is, so
    re-importing a metrics module does not fail on duplicate timeseries.

    Args:
        registry: Prometheus registry to register the metric with
        name: Metric name (e.g., "agent_run_duration_seconds")
        documentation: Human-readable metric description
        labelnames: Tuple of label names for the histogram

    Returns:
        Configured Prometheus Histogram instance
    """
    try:
        return prometheus_client.Histogram(
            name=name,
            documentation=documentation,
            labelnames=labelnames,
            registry=registry,
            buckets=BUCKETS,
        )
    except ValueError as exc:
        return _registered(registry, name, exc)


def setup_counter_factory(registry, name, documentation, labelnames):
    """Create a Prometheus counter, or return the one already registered."""
    try:
        return prometheus_client.Counter(
            name=name,
            documentation=documentation,
            labelnames=labelnames,
            registry=registry,
        )
    except ValueError as exc:
        return _registered(registry, name, exc)


def metrics() -> tuple[bytes, str]:
    """Generate Prometheus exposition output.

    Returns:
        Tuple of (metrics_body, content_type)
    """
    return (
        prometheus_client.generate_latest(prometheus_client.REGISTRY),
        prometheus_client.CONTENT_TYPE_LATEST,
    )
