"""agent-runtime - Execution kernel for tool-using LLM agents."""

from .platform import (
    AgentConfig,
    AgentInput,
    AgentProcessor,
    AgentResult,
    AgentType,
    RunContext,
    RunStatus,
    Settings,
)

__all__ = [
    "AgentConfig",
    "AgentInput",
    "AgentProcessor",
    "AgentResult",
    "AgentType",
    "RunContext",
    "RunStatus",
    "Settings",
]
