"""Typed chunks a model provider yields for one generation iteration."""

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True, kw_only=True)
class TextDelta:
    text: str
    type: Literal["text-delta"] = field(default="text-delta", init=False)


@dataclass(frozen=True, kw_only=True)
class ToolCall:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool-call"] = field(default="tool-call", init=False)


@dataclass(frozen=True, kw_only=True)
class ToolResult:
    """Result of a tool call. A mapping output with an "error" key is a failure."""

    tool_call_id: str
    tool_name: str
    output: Any = None
    input: dict[str, Any] | None = None
    type: Literal["tool-result"] = field(default="tool-result", init=False)


@dataclass(frozen=True, kw_only=True)
class ToolError:
    tool_call_id: str
    tool_name: str
    error: Any
    input: dict[str, Any] | None = None
    type: Literal["tool-error"] = field(default="tool-error", init=False)


@dataclass(frozen=True, kw_only=True)
class ReasoningStart:
    id: str
    type: Literal["reasoning-start"] = field(default="reasoning-start", init=False)


@dataclass(frozen=True, kw_only=True)
class ReasoningDelta:
    id: str
    text: str
    type: Literal["reasoning-delta"] = field(default="reasoning-delta", init=False)


@dataclass(frozen=True, kw_only=True)
class ReasoningEnd:
    id: str
    type: Literal["reasoning-end"] = field(default="reasoning-end", init=False)


@dataclass(frozen=True, kw_only=True)
class StepStart:
    type: Literal["step-start"] = field(default="step-start", init=False)


@dataclass(frozen=True, kw_only=True)
class StepFinish:
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    type: Literal["step-finish"] = field(default="step-finish", init=False)


@dataclass(frozen=True, kw_only=True)
class Finish:
    finish_reason: str
    usage: dict[str, Any] | None = None
    type: Literal["finish"] = field(default="finish", init=False)


@dataclass(frozen=True, kw_only=True)
class StreamError:
    error: BaseException
    type: Literal["error"] = field(default="error", init=False)


type StreamChunk = (
    TextDelta
    | ToolCall
    | ToolResult
    | ToolError
    | ReasoningStart
    | ReasoningDelta
    | ReasoningEnd
    | StepStart
    | StepFinish
    | Finish
    | StreamError
)
