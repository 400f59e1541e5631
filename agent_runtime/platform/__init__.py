"""Agent runtime infrastructure module.

This module provides the building blocks for running agents:
- Agent processor, protocols and configuration
- Settings loaded from the environment
- Logging and metrics utilities
"""

from agent_runtime.platform.agent import (
    AgentConfig,
    AgentInput,
    AgentProcessor,
    AgentResult,
    AgentType,
    LlmConfig,
    RunContext,
    RunStatus,
)
from agent_runtime.platform.settings import Settings

__all__ = [
    "AgentConfig",
    "AgentInput",
    "AgentProcessor",
    "AgentResult",
    "AgentType",
    "LlmConfig",
    "RunContext",
    "RunStatus",
    "Settings",
]
