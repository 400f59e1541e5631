"""Observability infrastructure module.

This module provides monitoring for agent runs:
- Structured logging with run IDs
- Prometheus metric factories
"""

from agent_runtime.platform.observability.logging import (
    configure_logging,
    get_logger,
    run_id_ctx,
    run_logging_context,
)
from agent_runtime.platform.observability.metrics import (
    BUCKETS,
    metrics,
    setup_counter_factory,
    setup_metrics_factory,
)

__all__ = [
    "BUCKETS",
    "configure_logging",
    "get_logger",
    "metrics",
    "run_id_ctx",
    "run_logging_context",
    "setup_counter_factory",
    "setup_metrics_factory",
]
