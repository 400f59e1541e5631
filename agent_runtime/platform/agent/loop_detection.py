"""Tool-call signature tracking and stuck-loop detection.

Three independent rules judge a run stuck. They overlap on purpose, each
catching a different pattern:

1. The last N tool results share one signature and all failed: the agent
   repeats a failing call without adapting.
2. The last N tool calls are identical: repetition that succeeds but
   makes no progress.
3. The last N tool calls all name the same tool with varying arguments.

Tools that wait on a human reply are exempt, since repeated calls there
reflect pending input rather than a loop.
"""

import json
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from agent_runtime.platform.settings import LoopDetectionSettings


def tool_signature(tool_name: str, args: Any) -> str:
    """Deterministic signature for a tool call.

    Args:
        tool_name: Name of the tool
        args: Call arguments; serialized as JSON with sorted keys

    Returns:
        "<tool_name>:<canonical json>"
    """
    serialized = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return f"{tool_name}:{serialized}"


def signature_tool_name(signature: str) -> str:
    """Tool name part of a signature."""
    name, _, _ = signature.partition(":")
    return name


@dataclass(frozen=True)
class ToolCallRecord:
    """Outcome of one completed or failed tool invocation."""

    signature: str
    success: bool
    timestamp: float


class StuckRule(StrEnum):
    REPEATED_FAILURE = "repeated_failure"
    IDENTICAL_CALLS = "identical_calls"
    SAME_TOOL = "same_tool"


@dataclass(frozen=True)
class StuckLoop:
    """A detected stuck pattern.

    Attributes:
        rule: Rule that fired
        tool_name: Tool the pattern repeats
        signatures: Signatures that formed the pattern, oldest first
        count: Length of the repeating run
    """

    rule: StuckRule
    tool_name: str
    signatures: tuple[str, ...]
    count: int

    @property
    def message(self) -> str:
        chain = " → ".join(self.signatures)
        match self.rule:
            case StuckRule.REPEATED_FAILURE:
                return (
                    f"Doom loop detected: Agent made {self.count} identical FAILED tool calls "
                    f"(not learning from errors): {chain}"
                )
            case StuckRule.IDENTICAL_CALLS:
                return (
                    f"Doom loop detected: Agent made {self.count} identical tool calls "
                    f'to "{self.tool_name}": {chain}'
                )
            case StuckRule.SAME_TOOL:
                return (
                    f'Doom loop detected: Agent called tool "{self.tool_name}" {self.count}+ times '
                    f"with varying parameters: {chain}"
                )


def _trailing_run(values: Sequence[str]) -> int:
    """Length of the run of equal values at the end of ``values``."""
    if not values:
        return 0
    last = values[-1]
    run = 0
    for value in reversed(values):
        if value != last:
            break
        run += 1
    return run


def detect_stuck_loop(
    call_history: Sequence[str],
    result_history: Sequence[ToolCallRecord],
    settings: LoopDetectionSettings | None = None,
) -> StuckLoop | None:
    """Evaluate the stuck-loop rules over the sliding histories.

    Args:
        call_history: Call signatures, oldest first
        result_history: Result records, oldest first
        settings: Thresholds and interactive tools

    Returns:
        The first rule that fires, or None
    """
    settings = settings or LoopDetectionSettings()
    interactive = settings.interactive_tools

    threshold = settings.failure_threshold
    if len(result_history) >= threshold:
        window = list(result_history)[-threshold:]
        first = window[0].signature
        if (
            all(record.signature == first and not record.success for record in window)
            and signature_tool_name(first) not in interactive
        ):
            return StuckLoop(
                rule=StuckRule.REPEATED_FAILURE,
                tool_name=signature_tool_name(first),
                signatures=tuple(record.signature for record in window),
                count=threshold,
            )

    calls = list(call_history)
    threshold = settings.identical_threshold
    if len(calls) >= threshold:
        run = _trailing_run(calls)
        tool_name = signature_tool_name(calls[-1])
        if run >= threshold and tool_name not in interactive:
            return StuckLoop(
                rule=StuckRule.IDENTICAL_CALLS,
                tool_name=tool_name,
                signatures=tuple(calls[-run:]),
                count=run,
            )

    threshold = settings.same_tool_threshold
    if len(calls) >= threshold:
        window = calls[-threshold:]
        names = [signature_tool_name(signature) for signature in window]
        if len(set(names)) == 1 and names[0] not in interactive:
            return StuckLoop(
                rule=StuckRule.SAME_TOOL,
                tool_name=names[0],
                signatures=tuple(window),
                count=threshold,
            )

    return None


def is_stuck(
    call_history: Sequence[str],
    result_history: Sequence[ToolCallRecord],
    settings: LoopDetectionSettings | None = None,
) -> bool:
    return detect_stuck_loop(call_history, result_history, settings) is not None


class ToolCallTracker:
    """Bounded sliding histories of tool calls and their outcomes for one run."""

    def __init__(self, settings: LoopDetectionSettings | None = None) -> None:
        self._settings = settings or LoopDetectionSettings()
        self._calls: deque[str] = deque(maxlen=self._settings.history_size)
        self._results: deque[ToolCallRecord] = deque(maxlen=self._settings.history_size)

    @property
    def calls(self) -> tuple[str, ...]:
        return tuple(self._calls)

    @property
    def results(self) -> tuple[ToolCallRecord, ...]:
        return tuple(self._results)

    def record_call(self, signature: str) -> None:
        """Record that a tool call was issued."""
        self._calls.append(signature)

    def record(self, signature: str, success: bool) -> ToolCallRecord:
        """Record the outcome of a tool call."""
        record = ToolCallRecord(signature=signature, success=success, timestamp=time.time())
        self._results.append(record)
        return record

    def detect(self) -> StuckLoop | None:
        return detect_stuck_loop(self._calls, self._results, self._settings)

    def is_stuck(self) -> bool:
        return self.detect() is not None
