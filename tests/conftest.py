"""Shared test fixtures.

This module provides a scripted model provider and helpers used by both
unit and integration tests:
- ScriptedStream: replays a fixed chunk sequence and response
- ScriptedProvider: hands out one scripted stream (or raises) per call
- Event capture and agent config factories
"""

from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import pytest
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.tools import BaseTool, tool

from agent_runtime.platform.agent.chunks import Finish, StreamChunk, TextDelta, ToolCall, ToolResult
from agent_runtime.platform.agent.config import AgentConfig, AgentType
from agent_runtime.platform.agent.events import AgentEvent
from agent_runtime.platform.agent.protocol import ModelRequest


class ScriptedStream:
    """A model stream replaying fixed chunks.

    Exceptions placed among the chunks are raised when reached.
    """

    def __init__(
        self,
        chunks: Iterable[StreamChunk | BaseException],
        response: list[BaseMessage] | None = None,
    ) -> None:
        self._chunks = list(chunks)
        self._response = response or []
        self.consumed = False

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        for chunk in self._chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk
        self.consumed = True

    async def response(self) -> list[BaseMessage]:
        return list(self._response)

    @classmethod
    def text(cls, text: str, finish_reason: str = "stop") -> "ScriptedStream":
        """A turn that streams text and finishes."""
        return cls(
            [TextDelta(text=text), Finish(finish_reason=finish_reason)],
            [AIMessage(content=text)],
        )

    @classmethod
    def tool_calls(
        cls,
        calls: list[tuple[str, str, dict[str, Any], Any]],
        finish_reason: str = "tool-calls",
        text: str = "",
    ) -> "ScriptedStream":
        """A turn issuing tool calls, each answered by its scripted output.

        Args:
            calls: (call_id, tool_name, args, output) tuples
            finish_reason: Finish reason of the turn
            text: Assistant text streamed before the calls
        """
        chunks: list[StreamChunk] = []
        if text:
            chunks.append(TextDelta(text=text))
        messages: list[BaseMessage] = [
            AIMessage(
                content=text,
                tool_calls=[{"name": name, "args": args, "id": call_id} for call_id, name, args, _ in calls],
            )
        ]
        for call_id, name, args, output in calls:
            chunks.append(ToolCall(tool_call_id=call_id, tool_name=name, input=args))
            chunks.append(ToolResult(tool_call_id=call_id, tool_name=name, output=output, input=args))
            messages.append(ToolMessage(content=str(output), tool_call_id=call_id, name=name))
        chunks.append(Finish(finish_reason=finish_reason))
        return cls(chunks, messages)


class ScriptedProvider:
    """ModelProvider replaying a script, one entry per stream() call.

    An entry is either a ScriptedStream or an exception raised by stream().
    """

    def __init__(self, script: Iterable[ScriptedStream | BaseException]) -> None:
        self._script = list(script)
        self.requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest) -> ScriptedStream:
        self.requests.append(request)
        if not self._script:
            raise AssertionError("Provider script exhausted")
        step = self._script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


class ProviderHTTPError(Exception):
    """Provider-style error carrying an HTTP status and response headers."""

    def __init__(self, message: str, status_code: int | None = None, headers: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_headers = headers or {}


@tool
def ls(path: str = ".") -> str:
    """List files in a directory."""
    return "README.md\nsrc"


@tool
def bash(command: str) -> str:
    """Run a shell command."""
    return f"ran {command}"


@pytest.fixture
def scripted_stream() -> type[ScriptedStream]:
    return ScriptedStream


@pytest.fixture
def scripted_provider() -> type[ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def provider_error() -> type[ProviderHTTPError]:
    return ProviderHTTPError


@pytest.fixture
def tools() -> dict[str, BaseTool]:
    return {"ls": ls, "bash": bash}


@pytest.fixture
def events() -> list[AgentEvent]:
    """Events captured by the ``sink`` fixture, in emission order."""
    return []


@pytest.fixture
def sink(events: list[AgentEvent]) -> Callable[[AgentEvent], None]:
    return events.append


@pytest.fixture
def make_config(tools: dict[str, BaseTool]) -> Callable[..., AgentConfig]:
    """Factory for agent configs with test defaults."""

    def factory(**overrides: Any) -> AgentConfig:
        values: dict[str, Any] = {
            "id": "test-agent",
            "type": AgentType.BUILD,
            "model": "test/model",
            "system_prompt": "You are a test agent.",
            "tools": tools,
            "max_iterations": 10,
        }
        values.update(overrides)
        return AgentConfig(**values)

    return factory
