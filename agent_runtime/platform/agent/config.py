"""Configuration dataclasses for agent components.

This module provides immutable configuration objects for LLM clients
and agent runs.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from langchain_core.tools import BaseTool


class AgentType(StrEnum):
    """Role an agent plays in a session."""

    EXPLORE = "explore"
    PLAN = "plan"
    BUILD = "build"


@dataclass(frozen=True)
class LlmConfig:
    """Configuration for language model clients.

    Attributes:
        model: Model identifier (e.g., "anthropic/claude-sonnet-4-5")
        api_key: API key for the LLM provider
        base_url: Base URL for the API (e.g., LiteLLM proxy URL)
    """

    model: str
    api_key: str | None = None
    base_url: str | None = None


@dataclass(frozen=True)
class AgentConfig:
    """Configuration for a single agent run.

    Created once per run and owned by the processor for the run's lifetime.

    Attributes:
        id: Agent identifier, used in events, logs and metrics
        type: Agent role
        model: Model reference passed to the provider
        system_prompt: System prompt that opens the conversation
        temperature: Sampling temperature
        tools: Tool name to executable tool mapping
        max_iterations: Iteration ceiling; the last iteration runs without tools
    """

    id: str
    type: AgentType
    model: str
    system_prompt: str
    temperature: float = 0.7
    tools: Mapping[str, BaseTool] = field(default_factory=dict)
    max_iterations: int = 50

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
