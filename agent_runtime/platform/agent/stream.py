"""Stream interpreter for a single model-generation iteration.

Folds an ordered chunk sequence into accumulated assistant text, the
materialized tool calls and a finished/not-finished verdict, re-emitting
each chunk as a public agent event. The interpreter never touches the
conversation buffer.
"""

import hashlib
import json
import re
import time
import uuid
from collections.abc import AsyncIterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from agent_runtime.platform.agent.chunks import (
    Finish,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StepFinish,
    StepStart,
    StreamChunk,
    StreamError,
    TextDelta,
    ToolCall,
    ToolError,
    ToolResult,
)
from agent_runtime.platform.agent.events import (
    ErrorEvent,
    EventEmitter,
    FinishEvent,
    PatchEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    ReasoningStartEvent,
    SnapshotEvent,
    StepFinishEvent,
    StepStartEvent,
    TextEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from agent_runtime.platform.agent.loop_detection import ToolCallTracker, tool_signature
from agent_runtime.platform.constants import NATURAL_STOP_REASON

logger = structlog.get_logger(__name__)

_PATH_KEY_RE = re.compile(
    r"(^|_|-)(path|file|filename|filepath|targetfile|absolutepath|relativepath)s?$",
    re.IGNORECASE,
)
_MAX_PATH_DEPTH = 4
_MAX_PATH_LENGTH = 512


def _maybe_add_path(paths: set[str], value: Any) -> None:
    if not isinstance(value, str):
        return
    trimmed = value.strip()
    if not trimmed or len(trimmed) > _MAX_PATH_LENGTH:
        return
    if "/" not in trimmed and "\\" not in trimmed:
        return
    paths.add(trimmed)


def collect_file_paths(value: Any, out: set[str], depth: int = 0) -> None:
    """Collect path-like strings from fields whose key names a path or file.

    Args:
        value: Tool arguments or result payload
        out: Set receiving the paths
        depth: Current recursion depth
    """
    if depth > _MAX_PATH_DEPTH:
        return
    if isinstance(value, list | tuple):
        for item in value:
            collect_file_paths(item, out, depth + 1)
        return
    if not isinstance(value, Mapping):
        return

    for key, entry in value.items():
        if isinstance(key, str) and _PATH_KEY_RE.search(key):
            if isinstance(entry, list | tuple):
                for item in entry:
                    _maybe_add_path(out, item)
            else:
                _maybe_add_path(out, entry)
        collect_file_paths(entry, out, depth + 1)


def _number(value: Any) -> float:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return value
    return 0


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def normalize_usage(usage: Any) -> tuple[float, dict[str, Any]]:
    """Normalize provider usage into (cost, tokens).

    Accepts both snake_case (LangChain) and camelCase keys.
    """
    data = usage if isinstance(usage, Mapping) else {}
    details = data.get("input_token_details") or {}
    output_details = data.get("output_token_details") or {}
    cost = _number(_first(data, "cost", "total_cost", "totalCost"))
    tokens = {
        "input": _number(_first(data, "input_tokens", "inputTokens", "prompt_tokens", "promptTokens", "input")),
        "output": _number(
            _first(data, "output_tokens", "outputTokens", "completion_tokens", "completionTokens", "output")
        ),
        "reasoning": _number(
            _first(data, "reasoning_tokens", "reasoningTokens", "reasoning") or output_details.get("reasoning")
        ),
        "cache": {
            "read": _number(
                _first(data, "cache_read_input_tokens", "cacheReadInputTokens", "cachedInputTokens", "cacheRead")
                or details.get("cache_read")
            ),
            "write": _number(
                _first(data, "cache_write_input_tokens", "cacheWriteInputTokens", "cacheWrite")
                or details.get("cache_creation")
            ),
        },
    }
    return cost, tokens


def is_success_output(output: Any) -> bool:
    """A tool result is a failure when it is a mapping carrying an "error" key."""
    return not (isinstance(output, Mapping) and "error" in output)


def tool_message_content(output: Any) -> str:
    """Render a tool output as the text content of a tool message."""
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, default=str)
    except (TypeError, ValueError):
        return str(output)


@dataclass(frozen=True)
class PendingToolCall:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]
    signature: str


@dataclass(frozen=True)
class CompletedToolCall:
    tool_call_id: str
    tool_name: str
    content: str
    success: bool


@dataclass
class IterationOutcome:
    """What one iteration produced.

    Attributes:
        finished: Whether the model declared a natural stop
        finish_reason: Declared finish reason, if any
        text: Accumulated assistant text
        tool_calls: Tool calls issued during the iteration, in order
        interrupted: Tool calls that never received a result
        completed: Rendered results of answered tool calls, by call id
        touched_files: Paths observed in tool arguments and results
    """

    finished: bool = False
    finish_reason: str | None = None
    text: str = ""
    tool_calls: list[PendingToolCall] = field(default_factory=list)
    interrupted: list[PendingToolCall] = field(default_factory=list)
    completed: dict[str, CompletedToolCall] = field(default_factory=dict)
    touched_files: list[str] = field(default_factory=list)


class StreamInterpreter:
    """Interprets the chunk stream of one iteration.

    A single step boundary is synthesized around the iteration when the
    provider reports none, so consumers always see a well-formed step
    lifecycle.
    """

    def __init__(
        self,
        agent_id: str,
        iteration: int,
        tracker: ToolCallTracker,
        emitter: EventEmitter,
    ) -> None:
        """Initialize the interpreter.

        Args:
            agent_id: Agent identifier stamped on every event
            iteration: 1-based iteration number, used for the step id
            tracker: Tool-call tracker receiving calls and outcomes
            emitter: Event emitter
        """
        self._agent_id = agent_id
        self._iteration = iteration
        self._tracker = tracker
        self._emitter = emitter

        self._step_id = f"step-{iteration}"
        self._snapshot = uuid.uuid4().hex
        self._step_started = False
        self._step_finished = False
        self._touched_files: set[str] = set()
        self._pending: dict[str, PendingToolCall] = {}
        self._signatures: dict[str, str] = {}
        self._reasoning_started: dict[str, float] = {}
        self._outcome = IterationOutcome()

    async def process(self, stream: AsyncIterable[StreamChunk]) -> IterationOutcome:
        """Consume the stream and return the iteration outcome.

        Raises:
            BaseException: The error carried by an error chunk, after it is emitted
        """
        async for chunk in stream:
            self._handle(chunk)

        if self._step_started and not self._step_finished:
            self._finish_step(self._outcome.finish_reason or NATURAL_STOP_REASON)

        self._outcome.interrupted = list(self._pending.values())
        self._outcome.touched_files = sorted(self._touched_files)
        self._outcome.finished = self._outcome.finish_reason == NATURAL_STOP_REASON
        return self._outcome

    def _handle(self, chunk: StreamChunk) -> None:
        match chunk:
            case StepStart():
                self._begin_step()
            case StepFinish(finish_reason=reason, usage=usage):
                self._finish_step(reason or NATURAL_STOP_REASON, usage)
            case TextDelta(text=text):
                self._begin_step()
                self._outcome.text += text
                self._emit(TextEvent(agent_id=self._agent_id, text=text))
            case ToolCall():
                self._begin_step()
                self._handle_tool_call(chunk)
            case ToolResult():
                self._begin_step()
                self._handle_tool_result(chunk)
            case ToolError():
                self._begin_step()
                self._handle_tool_error(chunk)
            case ReasoningStart(id=reasoning_id):
                self._begin_step()
                self._reasoning_started[reasoning_id] = time.monotonic()
                self._emit(ReasoningStartEvent(agent_id=self._agent_id, reasoning_id=reasoning_id))
                logger.debug("reasoning_started", reasoning_id=reasoning_id)
            case ReasoningDelta(id=reasoning_id, text=text):
                self._begin_step()
                self._emit(
                    ReasoningDeltaEvent(agent_id=self._agent_id, reasoning_id=reasoning_id, text=text)
                )
            case ReasoningEnd(id=reasoning_id):
                self._begin_step()
                started = self._reasoning_started.pop(reasoning_id, None)
                duration_ms = int((time.monotonic() - started) * 1000) if started is not None else 0
                self._emit(
                    ReasoningEndEvent(
                        agent_id=self._agent_id,
                        reasoning_id=reasoning_id,
                        duration_ms=duration_ms,
                    )
                )
                logger.debug("reasoning_ended", reasoning_id=reasoning_id, duration_ms=duration_ms)
            case Finish(finish_reason=reason, usage=usage):
                self._begin_step()
                self._finish_step(reason, usage)
                self._outcome.finish_reason = reason
                self._emit(FinishEvent(agent_id=self._agent_id, finish_reason=reason))
            case StreamError(error=error):
                self._begin_step()
                self._finish_step("error")
                logger.error(
                    "stream_error_received",
                    error_type=type(error).__name__,
                    error=str(error),
                )
                self._emit(ErrorEvent(agent_id=self._agent_id, message=str(error) or type(error).__name__))
                raise error
            case _:
                logger.debug("unhandled_chunk", chunk_type=type(chunk).__name__)

    def _handle_tool_call(self, chunk: ToolCall) -> None:
        collect_file_paths(chunk.input, self._touched_files)
        signature = tool_signature(chunk.tool_name, chunk.input)
        call = PendingToolCall(
            tool_call_id=chunk.tool_call_id,
            tool_name=chunk.tool_name,
            input=chunk.input,
            signature=signature,
        )
        self._outcome.tool_calls.append(call)
        self._pending[chunk.tool_call_id] = call
        self._signatures[chunk.tool_call_id] = signature
        self._tracker.record_call(signature)

        logger.info(
            "tool_call",
            tool_name=chunk.tool_name,
            tool_args=chunk.input,
            tool_call_id=chunk.tool_call_id,
            iteration=self._iteration,
        )
        self._emit(
            ToolCallEvent(
                agent_id=self._agent_id,
                tool_call_id=chunk.tool_call_id,
                tool_name=chunk.tool_name,
                args=chunk.input,
            )
        )

    def _resolve_signature(self, tool_call_id: str, tool_name: str, args: Any) -> str | None:
        signature = self._signatures.get(tool_call_id)
        if signature is None and args is not None:
            signature = tool_signature(tool_name, args)
        return signature

    def _handle_tool_result(self, chunk: ToolResult) -> None:
        collect_file_paths(chunk.output, self._touched_files)
        self._pending.pop(chunk.tool_call_id, None)
        signature = self._resolve_signature(chunk.tool_call_id, chunk.tool_name, chunk.input)
        success = is_success_output(chunk.output)
        if signature is not None:
            self._tracker.record(signature, success)
        content = tool_message_content(chunk.output) if success else f"Error: {chunk.output.get('error')}"
        self._complete(chunk.tool_call_id, chunk.tool_name, content, success)

        if success:
            logger.info(
                "tool_succeeded",
                tool=chunk.tool_name,
                tool_call_id=chunk.tool_call_id,
                signature=signature,
            )
        else:
            logger.error(
                "tool_failed",
                tool=chunk.tool_name,
                tool_call_id=chunk.tool_call_id,
                error=chunk.output.get("error"),
                signature=signature,
            )
        self._emit(
            ToolResultEvent(
                agent_id=self._agent_id,
                tool_call_id=chunk.tool_call_id,
                tool_name=chunk.tool_name,
                result=chunk.output,
            )
        )

    def _handle_tool_error(self, chunk: ToolError) -> None:
        collect_file_paths(chunk.input, self._touched_files)
        self._pending.pop(chunk.tool_call_id, None)
        signature = self._resolve_signature(chunk.tool_call_id, chunk.tool_name, chunk.input)
        if signature is not None:
            self._tracker.record(signature, False)

        error = str(chunk.error) if isinstance(chunk.error, BaseException) else chunk.error
        self._complete(chunk.tool_call_id, chunk.tool_name, f"Error: {error}", False)
        logger.error(
            "tool_failed",
            tool=chunk.tool_name,
            tool_call_id=chunk.tool_call_id,
            error=error,
            signature=signature,
        )
        self._emit(
            ToolResultEvent(
                agent_id=self._agent_id,
                tool_call_id=chunk.tool_call_id,
                tool_name=chunk.tool_name,
                result={"error": error},
            )
        )

    def _complete(self, tool_call_id: str, tool_name: str, content: str, success: bool) -> None:
        self._outcome.completed[tool_call_id] = CompletedToolCall(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            content=content,
            success=success,
        )

    def _begin_step(self) -> None:
        if self._step_started:
            return
        self._step_started = True
        self._emit(
            StepStartEvent(agent_id=self._agent_id, step_id=self._step_id, snapshot=self._snapshot)
        )

    def _finish_step(self, reason: str, usage: Any = None) -> None:
        if not self._step_started or self._step_finished:
            return
        self._step_finished = True
        cost, tokens = normalize_usage(usage)
        self._emit(
            StepFinishEvent(
                agent_id=self._agent_id,
                step_id=self._step_id,
                reason=reason,
                snapshot=self._snapshot,
                cost=cost,
                tokens=tokens,
            )
        )
        self._emit(
            SnapshotEvent(agent_id=self._agent_id, step_id=self._step_id, snapshot=self._snapshot)
        )
        if self._touched_files:
            files = sorted(self._touched_files)
            digest = hashlib.sha1("\n".join(files).encode("utf-8")).hexdigest()
            self._emit(
                PatchEvent(agent_id=self._agent_id, step_id=self._step_id, hash=digest, files=files)
            )

    def _emit(self, event) -> None:
        self._emitter.emit(event)
