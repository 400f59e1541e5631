"""Agent-specific Prometheus metrics.

Covers run outcomes and duration, iterations, stream retries, tool calls,
token usage and stuck-loop detections.
"""

from time import monotonic
from types import TracebackType
from typing import NamedTuple, Self

import prometheus_client

from agent_runtime.platform.observability.metrics import (
    setup_counter_factory,
    setup_metrics_factory,
)


class AgentMetricsLabels(NamedTuple):
    agent: str


class ToolMetricsLabels(NamedTuple):
    agent: str
    tool_name: str


agent_run_histogram = setup_metrics_factory(
    prometheus_client.REGISTRY,
    name="agent_run_duration_seconds",
    documentation="Agent run duration (seconds)",
    labelnames=("agent", "status"),
)
agent_iterations_counter = setup_counter_factory(
    prometheus_client.REGISTRY,
    name="agent_iterations",
    documentation="Model generation iterations started",
    labelnames=("agent",),
)
agent_retries_counter = setup_counter_factory(
    prometheus_client.REGISTRY,
    name="agent_stream_retries",
    documentation="Stream iterations retried after a transient failure",
    labelnames=("agent", "error_kind"),
)
agent_stuck_loops_counter = setup_counter_factory(
    prometheus_client.REGISTRY,
    name="agent_stuck_loops",
    documentation="Runs stopped by stuck-loop detection",
    labelnames=("agent", "rule"),
)
agent_tokens_counter = setup_counter_factory(
    prometheus_client.REGISTRY,
    name="agent_tokens",
    documentation="Tokens consumed by model calls",
    labelnames=("agent", "model", "direction"),
)
tool_call_histogram = setup_metrics_factory(
    prometheus_client.REGISTRY,
    name="agent_tool_call_duration_seconds",
    documentation="Tool call duration (seconds)",
    labelnames=("agent", "tool_name", "status"),
)


def record_tool_call(labels: ToolMetricsLabels, duration: float, error: bool = False) -> None:
    """Record a single tool invocation.

    Args:
        labels: Agent and tool labels
        duration: Wall-clock duration in seconds
        error: Whether the tool failed
    """
    status = "error" if error else "success"
    tool_call_histogram.labels(labels.agent, labels.tool_name, status).observe(duration)


def record_agent_tokens(agent: str, model: str, input_tokens: int, output_tokens: int) -> None:
    """Record token usage for one model call, skipping zero counts."""
    if input_tokens > 0:
        agent_tokens_counter.labels(agent, model, "input").inc(input_tokens)
    if output_tokens > 0:
        agent_tokens_counter.labels(agent, model, "output").inc(output_tokens)


def record_iteration(agent: str) -> None:
    agent_iterations_counter.labels(agent).inc()


def record_retry(agent: str, error_kind: str) -> None:
    agent_retries_counter.labels(agent, error_kind).inc()


def record_stuck_loop(agent: str, rule: str) -> None:
    agent_stuck_loops_counter.labels(agent, rule).inc()


class collect_agent_metrics:  # noqa: N801
    """Async context manager timing an agent run.

    The run status defaults to "error" when the block raises; otherwise the
    caller reports it through ``set_status`` before the block exits.

    Usage:
        async with collect_agent_metrics(AgentMetricsLabels("build")) as run_metrics:
            result = ...
            run_metrics.set_status(result.status)
    """

    def __init__(self, labels: AgentMetricsLabels) -> None:
        self.labels = labels
        self.status = "unknown"
        self._start = 0.0

    def set_status(self, status: str) -> None:
        self.status = str(status)

    async def __aenter__(self) -> Self:
        self._start = monotonic()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        status = "error" if exc_type is not None else self.status
        agent_run_histogram.labels(self.labels.agent, status).observe(monotonic() - self._start)
        return False


class collect_tool_metrics:  # noqa: N801
    """Async context manager timing a tool call and recording its status."""

    def __init__(self, labels: ToolMetricsLabels) -> None:
        self.labels = labels
        self.error = False
        self._start = 0.0

    def mark_error(self) -> None:
        self.error = True

    async def __aenter__(self) -> Self:
        self._start = monotonic()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        record_tool_call(
            self.labels,
            duration=monotonic() - self._start,
            error=self.error or exc_type is not None,
        )
        return False
