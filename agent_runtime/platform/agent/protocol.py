"""Collaborator protocols consumed by the processor.

The processor is agnostic to model vendor, transport and storage; it
only depends on these narrow interfaces.
"""

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from langchain_core.messages import BaseMessage
from langchain_core.tools import BaseTool

from agent_runtime.platform.agent.chunks import StreamChunk
from agent_runtime.platform.agent.messages import RunContext


@dataclass(frozen=True)
class ModelRequest:
    """One streaming generation request.

    Attributes:
        agent_id: Agent issuing the request
        model: Model reference from the agent config
        messages: Outgoing message list for this iteration
        tools: Tool set, or None when tools are disabled for the call
        temperature: Sampling temperature
        abort: Run-scoped cancellation signal
        context: Explicit per-run context (overrides, headers)
    """

    agent_id: str
    model: str
    messages: list[BaseMessage]
    tools: Mapping[str, BaseTool] | None
    temperature: float
    abort: asyncio.Event
    context: RunContext = field(default_factory=RunContext)


class ModelStream(Protocol):
    """Chunks of one iteration plus the materialized response messages."""

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        """Yield chunks in the order the provider observed them."""
        ...

    async def response(self) -> list[BaseMessage]:
        """Materialized response messages, available once the chunks are consumed."""
        ...


class ModelProvider(Protocol):
    """Protocol for a streaming model provider."""

    async def stream(self, request: ModelRequest) -> ModelStream:
        """Start a streaming generation.

        Args:
            request: Messages, tools and cancellation signal for the call

        Returns:
            The iteration's chunk stream
        """
        ...


@dataclass(frozen=True)
class LoadedMemory:
    """Context returned by a memory store.

    Attributes:
        messages: Prior conversation messages to splice before the user message
        observations: Summarized observations, injected as a system message
    """

    messages: list[BaseMessage] = field(default_factory=list)
    observations: str | None = None


class MemoryStore(Protocol):
    """Protocol for long-term conversation memory. Both calls are best-effort."""

    async def load_context(self, thread_id: str, resource_id: str) -> LoadedMemory:
        ...

    async def persist(
        self,
        thread_id: str,
        resource_id: str,
        messages: Sequence[BaseMessage],
    ) -> None:
        ...
