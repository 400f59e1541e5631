"""Run input, output and context types.

These types are the vocabulary of a single agent run: what the caller
supplies, the explicit per-run context, and the terminal result.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from langchain_core.messages import BaseMessage

from agent_runtime.platform.agent.config import AgentType


class RunStatus(StrEnum):
    """Terminal status of an agent run."""

    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RunContext:
    """Explicit per-run context threaded into the processor and provider.

    Attributes:
        session_id: Session the run belongs to; used as the memory thread fallback
        provider_id: LiteLLM provider prefix applied to the model for this run
        model_id: Model override for this run
        headers: Extra headers to send with model requests
    """

    session_id: str | None = None
    provider_id: str | None = None
    model_id: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentResult:
    """Terminal record of an agent run.

    Attributes:
        agent_id: Identifier of the agent that ran
        agent_type: Role of the agent
        status: Terminal status
        messages: Full conversation buffer at the end of the run
        final_content: Last assistant text (completed runs only)
        error: Error message (failed runs only)
        error_kind: Failure kind (failed runs only)
        note: Informational note, e.g. when the iteration ceiling was reached
        iterations: Number of iterations started
        duration_ms: Wall-clock duration in milliseconds
    """

    agent_id: str
    agent_type: AgentType
    status: RunStatus
    messages: list[BaseMessage]
    final_content: str | None = None
    error: str | None = None
    error_kind: str | None = None
    note: str | None = None
    iterations: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class AgentInput:
    """Caller-supplied input for a run.

    Attributes:
        task: Task text
        context: Free-form context, rendered into the user message
        previous_results: Results of earlier sub-agents to fold into the prompt
    """

    task: str
    context: dict[str, Any] | None = None
    previous_results: list[AgentResult] | None = None
