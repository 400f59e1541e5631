"""Memory context resolution and an in-process memory store."""

from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import BaseMessage

from agent_runtime.platform.agent.messages import AgentInput, RunContext
from agent_runtime.platform.agent.protocol import LoadedMemory
from agent_runtime.platform.constants import DEFAULT_RESOURCE_ID


@dataclass(frozen=True)
class MemoryContext:
    thread_id: str
    resource_id: str


def _lookup(context: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = context.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_memory_context(input: AgentInput, context: RunContext | None = None) -> MemoryContext | None:
    """Resolve the memory thread and resource for a run.

    The thread comes from ``threadId``/``sessionId`` in the input context,
    falling back to the run's session. Without a thread there is no memory.

    Args:
        input: Run input
        context: Explicit per-run context

    Returns:
        The memory context, or None when the run has no thread
    """
    data = input.context or {}
    thread_id = _lookup(data, "threadId", "thread_id", "sessionId", "session_id")
    if thread_id is None and context is not None:
        thread_id = context.session_id
    if not thread_id:
        return None
    resource_id = _lookup(data, "resourceId", "resource_id") or DEFAULT_RESOURCE_ID
    return MemoryContext(thread_id=thread_id, resource_id=resource_id)


class InMemoryMemoryStore:
    """MemoryStore that keeps per-thread history in process.

    Nothing survives a restart; useful for the CLI and for tests.
    """

    def __init__(self) -> None:
        self._threads: dict[tuple[str, str], list[BaseMessage]] = defaultdict(list)
        self._observations: dict[tuple[str, str], str] = {}

    def set_observations(self, thread_id: str, resource_id: str, observations: str) -> None:
        self._observations[(thread_id, resource_id)] = observations

    def history(self, thread_id: str, resource_id: str = DEFAULT_RESOURCE_ID) -> list[BaseMessage]:
        return list(self._threads.get((thread_id, resource_id), []))

    async def load_context(self, thread_id: str, resource_id: str) -> LoadedMemory:
        key = (thread_id, resource_id)
        return LoadedMemory(
            messages=list(self._threads.get(key, [])),
            observations=self._observations.get(key),
        )

    async def persist(
        self,
        thread_id: str,
        resource_id: str,
        messages: Sequence[BaseMessage],
    ) -> None:
        self._threads[(thread_id, resource_id)].extend(messages)
