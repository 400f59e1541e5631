"""Agent events emitted to an external sink in chronological order.

Events are read-only once emitted. The sink is a plain callable; a sink
that raises never affects the run.
"""

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class AgentEvent:
    agent_id: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize the event for transport."""
        return dataclasses.asdict(self)


@dataclass(frozen=True, kw_only=True)
class TextEvent(AgentEvent):
    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True, kw_only=True)
class ToolCallEvent(AgentEvent):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    type: Literal["tool-call"] = field(default="tool-call", init=False)


@dataclass(frozen=True, kw_only=True)
class ToolResultEvent(AgentEvent):
    """Tool outcome. Tool errors are normalized to ``{"error": ...}`` results."""

    tool_call_id: str
    tool_name: str
    result: Any
    type: Literal["tool-result"] = field(default="tool-result", init=False)


@dataclass(frozen=True, kw_only=True)
class ReasoningStartEvent(AgentEvent):
    reasoning_id: str
    type: Literal["reasoning-start"] = field(default="reasoning-start", init=False)


@dataclass(frozen=True, kw_only=True)
class ReasoningDeltaEvent(AgentEvent):
    reasoning_id: str
    text: str
    type: Literal["reasoning-delta"] = field(default="reasoning-delta", init=False)


@dataclass(frozen=True, kw_only=True)
class ReasoningEndEvent(AgentEvent):
    reasoning_id: str
    duration_ms: int
    type: Literal["reasoning-end"] = field(default="reasoning-end", init=False)


@dataclass(frozen=True, kw_only=True)
class StepStartEvent(AgentEvent):
    step_id: str
    snapshot: str
    type: Literal["step-start"] = field(default="step-start", init=False)


@dataclass(frozen=True, kw_only=True)
class StepFinishEvent(AgentEvent):
    step_id: str
    reason: str
    snapshot: str
    cost: float = 0.0
    tokens: dict[str, Any] = field(default_factory=dict)
    type: Literal["step-finish"] = field(default="step-finish", init=False)


@dataclass(frozen=True, kw_only=True)
class SnapshotEvent(AgentEvent):
    step_id: str
    snapshot: str
    type: Literal["snapshot"] = field(default="snapshot", init=False)


@dataclass(frozen=True, kw_only=True)
class PatchEvent(AgentEvent):
    """Files touched during a step, addressed by the SHA-1 of the sorted list."""

    step_id: str
    hash: str
    files: list[str]
    type: Literal["patch"] = field(default="patch", init=False)


@dataclass(frozen=True, kw_only=True)
class RetryEvent(AgentEvent):
    attempt: int
    message: str
    next: int
    error_kind: str
    type: Literal["retry"] = field(default="retry", init=False)


@dataclass(frozen=True, kw_only=True)
class FinishEvent(AgentEvent):
    finish_reason: str
    type: Literal["finish"] = field(default="finish", init=False)


@dataclass(frozen=True, kw_only=True)
class ErrorEvent(AgentEvent):
    message: str
    type: Literal["error"] = field(default="error", init=False)


type EventSink = Callable[[AgentEvent], None]


class EventEmitter:
    """Delivers events to a sink, isolating the run from sink failures."""

    def __init__(self, sink: EventSink | None = None) -> None:
        self._sink = sink

    def emit(self, event: AgentEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:
            logger.warning("Event sink failed for %s", type(event).__name__, exc_info=True)
