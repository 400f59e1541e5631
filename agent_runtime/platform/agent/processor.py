"""Iteration controller driving one agent run.

The processor owns the conversation buffer and the tool-call history for
a single run. Each iteration streams one model generation through the
stream interpreter, retrying transient failures with cancellable
backoff, then checks for stuck loops and natural completion.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from opentelemetry import trace

from agent_runtime.platform.agent.config import AgentConfig
from agent_runtime.platform.agent.conversation import ConversationBuffer
from agent_runtime.platform.agent.errors import ErrorKind, RunCancelledError, classify_error
from agent_runtime.platform.agent.events import EventEmitter, EventSink, RetryEvent
from agent_runtime.platform.agent.loop_detection import ToolCallTracker
from agent_runtime.platform.agent.memory import MemoryContext, resolve_memory_context
from agent_runtime.platform.agent.messages import AgentInput, AgentResult, RunContext, RunStatus
from agent_runtime.platform.agent.metrics import (
    AgentMetricsLabels,
    collect_agent_metrics,
    record_iteration,
    record_retry,
    record_stuck_loop,
)
from agent_runtime.platform.agent.protocol import MemoryStore, ModelProvider, ModelRequest
from agent_runtime.platform.agent.retry import StreamRetrying
from agent_runtime.platform.agent.stream import (
    CompletedToolCall,
    IterationOutcome,
    PendingToolCall,
    StreamInterpreter,
)
from agent_runtime.platform.constants import (
    INTERRUPTED_TOOL_RESULT,
    MAX_ITERATIONS_NOTE,
    MAX_STEPS_PROMPT,
)
from agent_runtime.platform.observability.logging import run_logging_context
from agent_runtime.platform.settings import LoopDetectionSettings, RetrySettings

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


def render_user_message(input: AgentInput) -> str:
    """Render the task, its context and prior sub-agent results as one prompt."""
    content = input.task
    if input.context:
        content += "\n\nContext:\n" + json.dumps(input.context, indent=2, default=str)
    if input.previous_results:
        rendered = [
            f"[{result.agent_type}] {result.final_content or result.error or ''}"
            for result in input.previous_results
        ]
        content += "\n\nPrevious Results:\n" + "\n---\n".join(rendered)
    return content


@dataclass
class _Terminal:
    status: RunStatus
    error: str | None = None
    error_kind: str | None = None
    note: str | None = None


def _tool_message(call: PendingToolCall, completed: CompletedToolCall | None) -> ToolMessage:
    """Tool message answering ``call``; an unanswered call is marked interrupted."""
    if completed is None:
        return ToolMessage(
            content=INTERRUPTED_TOOL_RESULT,
            tool_call_id=call.tool_call_id,
            name=call.tool_name,
            status="error",
        )
    return ToolMessage(
        content=completed.content,
        tool_call_id=call.tool_call_id,
        name=call.tool_name,
        status="success" if completed.success else "error",
    )


class AgentProcessor:
    """Runs one agent through bounded model-generation iterations.

    A processor instance serves one run at a time. ``abort()`` may be
    called from another task to cancel the run; the run then ends with
    status ``stopped`` at the next checkpoint.

    Usage:
        processor = AgentProcessor(config, provider, on_event=print)
        result = await processor.run(AgentInput(task="list files"))
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: ModelProvider,
        *,
        memory: MemoryStore | None = None,
        on_event: EventSink | None = None,
        retry_settings: RetrySettings | None = None,
        loop_detection_settings: LoopDetectionSettings | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            config: Immutable agent configuration
            provider: Streaming model provider
            memory: Optional long-term memory store
            on_event: Sink receiving agent events in order
            retry_settings: Stream retry policy
            loop_detection_settings: Stuck-loop thresholds
        """
        self._config = config
        self._provider = provider
        self._memory = memory
        self._emitter = EventEmitter(on_event)
        self._retry_settings = retry_settings or RetrySettings()
        self._loop_detection_settings = loop_detection_settings or LoopDetectionSettings()
        self._abort = asyncio.Event()

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Set the cancellation signal. Safe to call more than once."""
        self._abort.set()

    async def run(self, input: AgentInput, context: RunContext | None = None) -> AgentResult:
        """Run the agent to a terminal result.

        Args:
            input: Task, context and prior results
            context: Explicit per-run context (session, overrides, headers)

        Returns:
            The terminal result; failures are reported in the result, not raised
        """
        context = context or RunContext()
        with run_logging_context(uuid.uuid4().hex, self._config.id, str(self._config.type)):
            async with collect_agent_metrics(AgentMetricsLabels(self._config.id)) as run_metrics:
                with tracer.start_as_current_span("agent.run") as span:
                    span.set_attribute("agent.id", self._config.id)
                    span.set_attribute("agent.type", str(self._config.type))
                    span.set_attribute("agent.model", self._config.model)
                    result = await self._run(input, context)
                    span.set_attribute("agent.status", str(result.status))
                    span.set_attribute("agent.iterations", result.iterations)
                run_metrics.set_status(result.status)
            return result

    async def _run(self, input: AgentInput, context: RunContext) -> AgentResult:
        started = time.monotonic()
        memory_context = resolve_memory_context(input, context) if self._memory is not None else None
        buffer = await self._initial_buffer(input, memory_context)
        tracker = ToolCallTracker(self._loop_detection_settings)
        iterations = 0

        logger.info(
            "agent_run_started",
            model=self._config.model,
            max_iterations=self._config.max_iterations,
            tools=sorted(self._config.tools),
        )

        try:
            terminal = None
            while iterations < self._config.max_iterations:
                if self._abort.is_set():
                    terminal = _Terminal(RunStatus.STOPPED)
                    break

                iterations += 1
                record_iteration(self._config.id)
                last = iterations == self._config.max_iterations
                with tracer.start_as_current_span("agent.iteration") as span:
                    span.set_attribute("agent.iteration", iterations)
                    outcome = await self._iterate(buffer, tracker, iterations, last, context)
                    span.set_attribute("agent.finish_reason", outcome.finish_reason or "")

                stuck = tracker.detect()
                if stuck is not None:
                    logger.error(
                        "stuck_loop_detected",
                        rule=str(stuck.rule),
                        tool_name=stuck.tool_name,
                        count=stuck.count,
                        iteration=iterations,
                    )
                    record_stuck_loop(self._config.id, stuck.rule)
                    terminal = _Terminal(
                        RunStatus.FAILED,
                        error=stuck.message,
                        error_kind=ErrorKind.STUCK_LOOP,
                    )
                    break

                if outcome.finished:
                    terminal = _Terminal(RunStatus.COMPLETED)
                    break
            else:
                logger.warning("max_iterations_reached", iterations=iterations)
                terminal = _Terminal(RunStatus.COMPLETED, note=MAX_ITERATIONS_NOTE)
        except RunCancelledError:
            terminal = _Terminal(RunStatus.STOPPED)
        except Exception as exc:
            if self._abort.is_set():
                terminal = _Terminal(RunStatus.STOPPED)
            else:
                classified = classify_error(exc)
                logger.error(
                    "agent_run_failed",
                    error_kind=str(classified.kind),
                    error=classified.raw_message,
                    iteration=iterations,
                    exc_info=True,
                )
                terminal = _Terminal(
                    RunStatus.FAILED,
                    error=classified.user_message,
                    error_kind=classified.kind,
                )

        if terminal.status == RunStatus.STOPPED:
            logger.info("agent_run_stopped", iteration=iterations)

        return await self._finish(input, buffer, memory_context, terminal, iterations, started)

    async def _initial_buffer(
        self,
        input: AgentInput,
        memory_context: MemoryContext | None,
    ) -> ConversationBuffer:
        system = SystemMessage(content=self._config.system_prompt)
        user = HumanMessage(content=render_user_message(input))
        if self._memory is None or memory_context is None:
            return ConversationBuffer([system, user])

        try:
            loaded = await self._memory.load_context(memory_context.thread_id, memory_context.resource_id)
        except Exception as exc:
            logger.warning(
                "memory_load_failed",
                thread_id=memory_context.thread_id,
                error=str(exc),
            )
            return ConversationBuffer([system, user])

        messages: list[BaseMessage] = [system]
        if loaded.observations:
            messages.append(SystemMessage(content=loaded.observations))
        messages.extend(loaded.messages)
        messages.append(user)
        logger.debug(
            "memory_loaded",
            thread_id=memory_context.thread_id,
            messages=len(loaded.messages),
            observations=bool(loaded.observations),
        )
        return ConversationBuffer(messages)

    async def _iterate(
        self,
        buffer: ConversationBuffer,
        tracker: ToolCallTracker,
        iteration: int,
        last: bool,
        context: RunContext,
    ) -> IterationOutcome:
        outgoing = buffer.outgoing()
        tools = self._config.tools
        if last:
            # Transient; never appended to the buffer
            outgoing.append(AIMessage(content=MAX_STEPS_PROMPT))
            tools = None

        request = ModelRequest(
            agent_id=self._config.id,
            model=context.model_id or self._config.model,
            messages=outgoing,
            tools=tools,
            temperature=self._config.temperature,
            abort=self._abort,
            context=context,
        )
        logger.debug("iteration_started", iteration=iteration, messages=len(outgoing), last=last)

        retrying = StreamRetrying(
            self._retry_settings,
            self._abort,
            on_retry=self._on_retry,
        )
        async for attempt in retrying.controller():
            with attempt:
                if self._abort.is_set():
                    raise RunCancelledError(self._config.id)
                stream = await self._provider.stream(request)
                interpreter = StreamInterpreter(self._config.id, iteration, tracker, self._emitter)
                outcome = await interpreter.process(stream)
                response = await stream.response()

        self._append_response(buffer, outcome, response)
        logger.debug(
            "iteration_finished",
            iteration=iteration,
            finish_reason=outcome.finish_reason,
            tool_calls=len(outcome.tool_calls),
            interrupted=len(outcome.interrupted),
        )
        return outcome

    def _append_response(
        self,
        buffer: ConversationBuffer,
        outcome: IterationOutcome,
        response: list[BaseMessage],
    ) -> None:
        if not response:
            buffer.append(
                AIMessage(
                    content=outcome.text,
                    tool_calls=[
                        {"name": call.tool_name, "args": call.input, "id": call.tool_call_id}
                        for call in outcome.tool_calls
                    ],
                )
            )
            for call in outcome.tool_calls:
                buffer.append(_tool_message(call, outcome.completed.get(call.tool_call_id)))
            return

        buffer.extend(response)
        answered = {message.tool_call_id for message in response if isinstance(message, ToolMessage)}
        for call in outcome.interrupted:
            if call.tool_call_id not in answered:
                buffer.append(_tool_message(call, None))

    def _on_retry(self, attempt: int, error: BaseException, delay_ms: int) -> None:
        classified = classify_error(error)
        logger.warning(
            "stream_retry_scheduled",
            attempt=attempt,
            delay_ms=delay_ms,
            error_kind=str(classified.kind),
            error=classified.raw_message,
        )
        record_retry(self._config.id, classified.kind)
        self._emitter.emit(
            RetryEvent(
                agent_id=self._config.id,
                attempt=attempt,
                message=classified.user_message,
                next=int(time.time() * 1000) + delay_ms,
                error_kind=str(classified.kind),
            )
        )

    async def _finish(
        self,
        input: AgentInput,
        buffer: ConversationBuffer,
        memory_context: MemoryContext | None,
        terminal: _Terminal,
        iterations: int,
        started: float,
    ) -> AgentResult:
        final_text = buffer.last_assistant_text()
        await self._persist(input, final_text, memory_context)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "agent_run_finished",
            status=str(terminal.status),
            iterations=iterations,
            duration_ms=duration_ms,
            error_kind=terminal.error_kind,
        )
        return AgentResult(
            agent_id=self._config.id,
            agent_type=self._config.type,
            status=terminal.status,
            messages=buffer.messages,
            final_content=final_text if terminal.status == RunStatus.COMPLETED else None,
            error=terminal.error,
            error_kind=str(terminal.error_kind) if terminal.error_kind else None,
            note=terminal.note,
            iterations=iterations,
            duration_ms=duration_ms,
        )

    async def _persist(
        self,
        input: AgentInput,
        final_text: str,
        memory_context: MemoryContext | None,
    ) -> None:
        if self._memory is None or memory_context is None:
            return

        messages: list[BaseMessage] = []
        if input.task.strip():
            messages.append(HumanMessage(content=input.task))
        if final_text.strip():
            messages.append(AIMessage(content=final_text))
        if not messages:
            return

        try:
            await self._memory.persist(memory_context.thread_id, memory_context.resource_id, messages)
        except Exception as exc:
            logger.warning(
                "memory_persist_failed",
                thread_id=memory_context.thread_id,
                error=str(exc),
            )
