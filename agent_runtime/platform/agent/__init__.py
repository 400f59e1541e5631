"""Agent execution kernel.

This module provides the core abstractions for running an agent:
- Configuration, input and result types
- Iteration controller (processor) and stream interpreter
- Error classification, retry backoff and stuck-loop detection
- LiteLLM/LangChain model provider
- Agent-specific metrics
"""

from agent_runtime.platform.agent.config import AgentConfig, AgentType, LlmConfig
from agent_runtime.platform.agent.errors import (
    AgentRuntimeError,
    ClassifiedError,
    ErrorKind,
    RunCancelledError,
    classify_error,
)
from agent_runtime.platform.agent.events import AgentEvent, EventEmitter, EventSink
from agent_runtime.platform.agent.llm_client import LangChainModelProvider, LlmClient
from agent_runtime.platform.agent.memory import InMemoryMemoryStore, resolve_memory_context
from agent_runtime.platform.agent.messages import AgentInput, AgentResult, RunContext, RunStatus
from agent_runtime.platform.agent.processor import AgentProcessor
from agent_runtime.platform.agent.protocol import (
    LoadedMemory,
    MemoryStore,
    ModelProvider,
    ModelRequest,
    ModelStream,
)

__all__ = [
    "AgentConfig",
    "AgentEvent",
    "AgentInput",
    "AgentProcessor",
    "AgentResult",
    "AgentRuntimeError",
    "AgentType",
    "ClassifiedError",
    "ErrorKind",
    "EventEmitter",
    "EventSink",
    "InMemoryMemoryStore",
    "LangChainModelProvider",
    "LlmClient",
    "LlmConfig",
    "LoadedMemory",
    "MemoryStore",
    "ModelProvider",
    "ModelRequest",
    "ModelStream",
    "RunCancelledError",
    "RunContext",
    "RunStatus",
    "classify_error",
    "resolve_memory_context",
]
