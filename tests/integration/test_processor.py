"""Integration tests for the agent processor.

Drives complete runs against a scripted model provider and checks the
terminal result, the emitted event sequence and the conversation buffer.
"""

import asyncio
import time

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from agent_runtime.platform.agent.chunks import (
    Finish,
    StreamError,
    TextDelta,
    ToolCall,
    ToolError,
    ToolResult,
)
from agent_runtime.platform.agent.errors import USER_MESSAGES, ErrorKind
from agent_runtime.platform.agent.events import (
    ErrorEvent,
    FinishEvent,
    RetryEvent,
    StepFinishEvent,
    StepStartEvent,
    TextEvent,
)
from agent_runtime.platform.agent.memory import InMemoryMemoryStore
from agent_runtime.platform.agent.messages import AgentInput, AgentResult, RunStatus
from agent_runtime.platform.agent.processor import AgentProcessor
from agent_runtime.platform.constants import (
    INTERRUPTED_TOOL_RESULT,
    MAX_ITERATIONS_NOTE,
    MAX_STEPS_PROMPT,
)
from agent_runtime.platform.settings import RetrySettings

FAST_RETRY = RetrySettings(initial_delay_ms=1, backoff_factor=1)


def _types(events) -> list[str]:
    return [event.type for event in events]


class TestNaturalCompletion:
    """Runs where the model finishes on its own."""

    async def test_finishes_on_first_iteration(self, make_config, scripted_provider, scripted_stream):
        """A model that answers immediately completes with one iteration."""
        provider = scripted_provider([scripted_stream.text("All done.")])
        processor = AgentProcessor(make_config(max_iterations=5), provider)

        result = await processor.run(AgentInput(task="say hi"))

        assert result.status == RunStatus.COMPLETED
        assert result.iterations == 1
        assert result.final_content == "All done."
        assert result.error is None
        assert result.note is None

    async def test_completes_for_any_ceiling(self, make_config, scripted_provider, scripted_stream):
        """Ceilings from 1 upward all complete in one iteration."""
        for ceiling in (1, 2, 50):
            provider = scripted_provider([scripted_stream.text("ok")])
            result = await AgentProcessor(make_config(max_iterations=ceiling), provider).run(
                AgentInput(task="t")
            )
            assert result.status == RunStatus.COMPLETED
            assert result.iterations == 1

    async def test_initial_buffer(self, make_config, scripted_provider, scripted_stream):
        """The first request carries the system prompt and rendered user message."""
        provider = scripted_provider([scripted_stream.text("ok")])
        processor = AgentProcessor(make_config(), provider)

        result = await processor.run(AgentInput(task="do it", context={"repo": "x"}))

        request = provider.requests[0]
        assert isinstance(request.messages[0], SystemMessage)
        assert request.messages[0].content == "You are a test agent."
        assert isinstance(request.messages[1], HumanMessage)
        assert request.messages[1].content.startswith("do it\n\nContext:\n")
        assert request.tools is not None
        assert isinstance(result.messages[-1], AIMessage)
        assert len(result.messages) == 3

    async def test_result_metadata(self, make_config, scripted_provider, scripted_stream):
        """The result records agent identity and a duration."""
        provider = scripted_provider([scripted_stream.text("ok")])
        result = await AgentProcessor(make_config(id="explorer"), provider).run(AgentInput(task="t"))

        assert result.agent_id == "explorer"
        assert result.agent_type == "build"
        assert result.duration_ms >= 0


class TestToolScenario:
    """A model that calls a tool once and finishes."""

    async def test_single_tool_call(
        self, make_config, scripted_provider, scripted_stream, tools, sink, events
    ):
        """Tool call and result events are emitted in order and the run completes."""
        provider = scripted_provider(
            [
                scripted_stream.tool_calls(
                    [("call_1", "ls", {"path": "."}, "README.md\nsrc")],
                    finish_reason="stop",
                )
            ]
        )
        processor = AgentProcessor(make_config(tools={"ls": tools["ls"]}), provider, on_event=sink)

        result = await processor.run(AgentInput(task="list files"))

        assert result.status == RunStatus.COMPLETED
        assert result.iterations == 1
        tool_events = [event for event in events if event.type in ("tool-call", "tool-result")]
        assert _types(tool_events) == ["tool-call", "tool-result"]
        assert tool_events[0].tool_name == "ls"
        assert tool_events[1].result == "README.md\nsrc"

    async def test_step_lifecycle_wraps_iteration(
        self, make_config, scripted_provider, scripted_stream, sink, events
    ):
        """A fallback step starts before the first content event and finishes after the last."""
        provider = scripted_provider(
            [scripted_stream.tool_calls([("call_1", "ls", {"path": "src/app"}, "ok")], finish_reason="stop")]
        )
        await AgentProcessor(make_config(), provider, on_event=sink).run(AgentInput(task="t"))

        types = _types(events)
        assert types[0] == "step-start"
        assert types.index("tool-call") < types.index("tool-result") < types.index("step-finish")
        assert types[-4:] == ["step-finish", "snapshot", "patch", "finish"]
        start = events[0]
        assert isinstance(start, StepStartEvent)
        assert start.step_id == "step-1"

    async def test_tool_then_answer_over_two_iterations(
        self, make_config, scripted_provider, scripted_stream
    ):
        """Tool results feed the next iteration's request."""
        provider = scripted_provider(
            [
                scripted_stream.tool_calls([("call_1", "ls", {"path": "."}, "README.md")]),
                scripted_stream.text("There is a README."),
            ]
        )
        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="list files"))

        assert result.status == RunStatus.COMPLETED
        assert result.iterations == 2
        second = provider.requests[1].messages
        assert isinstance(second[-1], ToolMessage)
        assert second[-1].tool_call_id == "call_1"
        assert result.final_content == "There is a README."


class TestRetries:
    """Transient failures are retried within the same iteration."""

    async def test_socket_closed_twice_then_success(
        self, make_config, scripted_provider, scripted_stream, sink, events
    ):
        """Two socket failures yield two retry events and the run completes."""
        provider = scripted_provider(
            [
                ConnectionResetError("other side closed"),
                ConnectionResetError("other side closed"),
                scripted_stream.text("recovered"),
            ]
        )
        processor = AgentProcessor(make_config(), provider, on_event=sink, retry_settings=FAST_RETRY)

        result = await processor.run(AgentInput(task="t"))

        retries = [event for event in events if isinstance(event, RetryEvent)]
        assert [event.attempt for event in retries] == [1, 2]
        assert all(event.error_kind == "network_socket_closed" for event in retries)
        assert all(event.next > 0 for event in retries)
        assert all(event.message == USER_MESSAGES[ErrorKind.NETWORK_SOCKET_CLOSED] for event in retries)
        assert result.status == RunStatus.COMPLETED
        assert result.iterations == 1
        assert len(provider.requests) == 3

    async def test_retry_event_hides_provider_detail(
        self, make_config, scripted_provider, scripted_stream, sink, events
    ):
        """Retry events carry the operator message, not the raw provider text."""
        provider = scripted_provider(
            [ConnectionResetError("ECONNRESET raw socket detail 10.0.0.1:443"), scripted_stream.text("ok")]
        )
        await AgentProcessor(make_config(), provider, on_event=sink, retry_settings=FAST_RETRY).run(
            AgentInput(task="t")
        )

        (retry,) = [event for event in events if isinstance(event, RetryEvent)]
        assert retry.message == "The connection to the model provider was closed unexpectedly."
        assert "10.0.0.1" not in retry.message

    async def test_retry_reuses_outgoing_messages(
self, make_config, scripted_provider, scripted_stream):
        """A retried attempt sends exactly the same messages."""
        provider = scripted_provider([TimeoutError("request timed out"), scripted_stream.text("ok")])
        await AgentProcessor(make_config(), provider, retry_settings=FAST_RETRY).run(AgentInput(task="t"))

        assert provider.requests[0].messages == provider.requests[1].messages

    async def test_error_chunk_is_emitted_and_retried(
        self, make_config, scripted_provider, scripted_stream, sink, events
    ):
        """An error chunk produces an error event, then the iteration is retried."""
        provider = scripted_provider(
            [
                scripted_stream([TextDelta(text="par"), StreamError(error=ConnectionResetError("socket hang up"))]),
                scripted_stream.text("done"),
            ]
        )
        result = await AgentProcessor(make_config(), provider, on_event=sink, retry_settings=FAST_RETRY).run(
            AgentInput(task="t")
        )

        types = _types(events)
        assert types.index("error") < types.index("retry")
        assert isinstance(events[types.index("error")], ErrorEvent)
        assert result.status == RunStatus.COMPLETED

    async def test_auth_failure_is_not_retried(
        self, make_config, scripted_provider, scripted_stream, provider_error, sink, events
    ):
        """Authentication failures end the run on first occurrence."""
        provider = scripted_provider(
            [provider_error("invalid api key", status_code=401), scripted_stream.text("unreachable")]
        )
        result = await AgentProcessor(make_config(), provider, on_event=sink, retry_settings=FAST_RETRY).run(
            AgentInput(task="t")
        )

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "auth"
        assert result.error == USER_MESSAGES[ErrorKind.AUTH]
        assert result.final_content is None
        assert not [event for event in events if isinstance(event, RetryEvent)]
        assert len(provider.requests) == 1

    async def test_exhausted_retries_fail(self, make_config, scripted_provider, provider_error, sink, events):
        """A retryable failure that persists past the ceiling fails the run."""
        settings = RetrySettings(initial_delay_ms=0, max_retries=2)
        provider = scripted_provider([provider_error("Service Unavailable", status_code=503)] * 3)

        result = await AgentProcessor(make_config(), provider, on_event=sink, retry_settings=settings).run(
            AgentInput(task="t")
        )

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "provider_unavailable"
        assert result.error == USER_MESSAGES[ErrorKind.PROVIDER_UNAVAILABLE]
        assert len([event for event in events if isinstance(event, RetryEvent)]) == 2
        assert len(provider.requests) == 3

    async def test_unknown_error_fails_without_retry(self, make_config, scripted_provider):
        """Unclassified errors are terminal unless flagged retryable."""
        provider = scripted_provider([ValueError("malformed payload")])
        result = await AgentProcessor(make_config(), provider, retry_settings=FAST_RETRY).run(AgentInput(task="t"))

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "unknown"
        assert len(provider.requests) == 1


class TestCancellation:
    """Aborting a run ends it with status stopped."""

    async def test_abort_before_run(self, make_config, scripted_provider, scripted_stream):
        """An already-aborted processor never calls the model."""
        provider = scripted_provider([scripted_stream.text("unused")])
        processor = AgentProcessor(make_config(), provider)
        processor.abort()

        result = await processor.run(AgentInput(task="t"))

        assert result.status == RunStatus.STOPPED
        assert result.iterations == 0
        assert provider.requests == []

    async def test_abort_during_backoff_returns_promptly(self, make_config, scripted_provider, scripted_stream):
        """Aborting mid-backoff stops the run without waiting out the delay."""
        retry_seen = asyncio.Event()

        def sink(event):
            if isinstance(event, RetryEvent):
                retry_seen.set()

        provider = scripted_provider([ConnectionResetError("econnreset"), scripted_stream.text("unused")])
        processor = AgentProcessor(
            make_config(),
            provider,
            on_event=sink,
            retry_settings=RetrySettings(initial_delay_ms=60_000),
        )

        task = asyncio.create_task(processor.run(AgentInput(task="t")))
        await asyncio.wait_for(retry_seen.wait(), timeout=2)
        started = time.monotonic()
        processor.abort()
        result: AgentResult = await asyncio.wait_for(task, timeout=2)

        assert time.monotonic() - started < 1
        assert result.status == RunStatus.STOPPED
        assert len(provider.requests) == 1

    async def test_abort_between_iterations_keeps_buffer(
        self, make_config, scripted_provider, scripted_stream
    ):
        """Messages appended before the abort are preserved in the result."""
        processor: AgentProcessor

        def sink(event):
            if isinstance(event, FinishEvent):
                processor.abort()

        provider = scripted_provider(
            [scripted_stream.tool_calls([("call_1", "ls", {"path": "."}, "README.md")])]
        )
        processor = AgentProcessor(make_config(), provider, on_event=sink)

        result = await processor.run(AgentInput(task="t"))

        assert result.status == RunStatus.STOPPED
        assert result.iterations == 1
        assert isinstance(result.messages[-1], ToolMessage)

    async def test_abort_mid_iteration_keeps_earlier_messages(
        self, make_config, scripted_provider, scripted_stream, events
    ):
        """A stream failing after abort ends the run stopped, not failed or retried."""
        processor: AgentProcessor

        def sink(event):
            events.append(event)
            if isinstance(event, TextEvent) and event.text == "partial":
                processor.abort()

        provider = scripted_provider(
            [
                scripted_stream.tool_calls([("call_1", "ls", {"path": "."}, "README.md")]),
                scripted_stream([TextDelta(text="partial"), ConnectionResetError("stream torn down")]),
            ]
        )
        processor = AgentProcessor(make_config(), provider, on_event=sink, retry_settings=FAST_RETRY)

        result = await processor.run(AgentInput(task="t"))

        assert result.status == RunStatus.STOPPED
        assert result.error is None
        assert result.iterations == 2
        assert len(provider.requests) == 2
        assert not [event for event in events if isinstance(event, RetryEvent)]
        assert len(result.messages) == 4
        assert result.messages[2].tool_calls[0]["id"] == "call_1"
        assert isinstance(result.messages[3], ToolMessage)
        assert result.messages[3].content == "README.md"


class TestIterationCeiling:
    """Behaviour when the iteration ceiling is reached."""

    async def test_ceiling_reports_completed_with_note(self, make_config, scripted_provider, scripted_stream):
        """Exhausting the ceiling is not a failure."""
        provider = scripted_provider(
            [
                scripted_stream.tool_calls([("call_1", "ls", {"path": "a/"}, "x")]),
                scripted_stream.text("Summary of progress", finish_reason="length"),
            ]
        )
        result = await AgentProcessor(make_config(max_iterations=2), provider).run(AgentInput(task="t"))

        assert result.status == RunStatus.COMPLETED
        assert result.note == MAX_ITERATIONS_NOTE
        assert result.iterations == 2
        assert result.final_content == "Summary of progress"

    async def test_last_iteration_disables_tools(self, make_config, scripted_provider, scripted_stream):
        """The last iteration sends no tools and a transient text-only instruction."""
        provider = scripted_provider(
            [
                scripted_stream.tool_calls([("call_1", "ls", {"path": "."}, "x")]),
                scripted_stream.text("summary"),
            ]
        )
        result = await AgentProcessor(make_config(max_iterations=2), provider).run(AgentInput(task="t"))

        first, last = provider.requests
        assert first.tools is not None
        assert last.tools is None
        assert isinstance(last.messages[-1], AIMessage)
        assert last.messages[-1].content == MAX_STEPS_PROMPT
        assert all(message.content != MAX_STEPS_PROMPT for message in result.messages)

    async def test_single_iteration_ceiling_has_no_tools(self, make_config, scripted_provider, scripted_stream):
        provider = scripted_provider([scripted_stream.text("summary")])
        await AgentProcessor(make_config(max_iterations=1), provider).run(AgentInput(task="t"))

        assert provider.requests[0].tools is None


class TestInterruptedToolCalls:
    """Tool calls without results get a synthesized interrupted result."""

    async def test_unanswered_call_is_closed(self, make_config, scripted_provider, scripted_stream):
        provider = scripted_provider(
            [
                scripted_stream(
                    [
                        TextDelta(text="Running"),
                        ToolCall(tool_call_id="call_9", tool_name="bash", input={"command": "sleep 100"}),
                        Finish(finish_reason="tool-calls"),
                    ]
                ),
                scripted_stream.text("done"),
            ]
        )
        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        assistant = result.messages[2]
        assert isinstance(assistant, AIMessage)
        assert assistant.content == "Running"
        assert assistant.tool_calls[0]["id"] == "call_9"
        interrupted = result.messages[3]
        assert isinstance(interrupted, ToolMessage)
        assert interrupted.tool_call_id == "call_9"
        assert interrupted.content == INTERRUPTED_TOOL_RESULT
        assert interrupted.status == "error"

    async def test_fallback_message_uses_accumulated_text(self, make_config, scripted_provider, scripted_stream):
        """With no response messages, the streamed text becomes the assistant message."""
        provider = scripted_provider(
            [scripted_stream([TextDelta(text="Hel"), TextDelta(text="lo"), Finish(finish_reason="stop")])]
        )
        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        assert result.final_content == "Hello"
        assert isinstance(result.messages[-1], AIMessage)

    async def test_fallback_answers_every_streamed_call(self, make_config, scripted_provider, scripted_stream):
        """Without response messages, each streamed call still gets exactly one tool message."""
        provider = scripted_provider(
            [
                scripted_stream(
                    [
                        ToolCall(tool_call_id="call_1", tool_name="ls", input={"path": "."}),
                        ToolResult(tool_call_id="call_1", tool_name="ls", output="README.md"),
                        ToolCall(tool_call_id="call_2", tool_name="bash", input={"command": "false"}),
                        ToolError(tool_call_id="call_2", tool_name="bash", error=RuntimeError("exit 1")),
                        ToolCall(tool_call_id="call_3", tool_name="bash", input={"command": "sleep 100"}),
                        Finish(finish_reason="tool-calls"),
                    ]
                ),
                scripted_stream.text("done"),
            ]
        )
        await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        second = provider.requests[1].messages
        assistant = second[2]
        assert isinstance(assistant, AIMessage)
        assert [call["id"] for call in assistant.tool_calls] == ["call_1", "call_2", "call_3"]

        answers = second[3:]
        assert all(isinstance(message, ToolMessage) for message in answers)
        assert [message.tool_call_id for message in answers] == ["call_1", "call_2", "call_3"]
        assert answers[0].content == "README.md"
        assert answers[0].status == "success"
        assert answers[1].content == "Error: exit 1"
        assert answers[1].status == "error"
        assert answers[2].content == INTERRUPTED_TOOL_RESULT
        assert answers[2].status == "error"


class TestStuckLoops:
    """Stuck-loop detection ends the run as failed."""

    async def test_six_identical_bash_calls(self, make_config, scripted_provider, scripted_stream):
        """Identical successful calls are reported with the tool and the count."""
        calls = [(f"call_{i}", "bash", {"command": "ls"}, "ok") for i in range(6)]
        provider = scripted_provider([scripted_stream.tool_calls(calls), scripted_stream.text("unreachable")])

        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "stuck_loop"
        assert "bash" in result.error
        assert "6" in result.error
        assert len(provider.requests) == 1

    async def test_repeated_failures(self, make_config, scripted_provider, scripted_stream):
        """Three identical failing calls end the run."""
        calls = [(f"call_{i}", "bash", {"command": "make"}, {"error": "exit 2"}) for i in range(3)]
        provider = scripted_provider([scripted_stream.tool_calls(calls)])

        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        assert result.status == RunStatus.FAILED
        assert "FAILED" in result.error

    async def test_detection_spans_iterations(self, make_config, scripted_provider, scripted_stream):
        """The tool history carries across iterations."""
        script = [
            scripted_stream.tool_calls([(f"call_{i}", "ls", {"path": f"dir{i}/"}, "x")]) for i in range(6)
        ]
        provider = scripted_provider(script)

        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        assert result.status == RunStatus.FAILED
        assert result.iterations == 6
        assert 'tool "ls"' in result.error

    async def test_interactive_tool_is_exempt(self, make_config, scripted_provider, scripted_stream):
        calls = [(f"call_{i}", "question", {"text": "ok?"}, {"error": "no answer"}) for i in range(6)]
        provider = scripted_provider([scripted_stream.tool_calls(calls), scripted_stream.text("done")])

        result = await AgentProcessor(make_config(), provider).run(AgentInput(task="t"))

        assert result.status == RunStatus.COMPLETED


class TestEventSink:
    """Sink failures never affect the run."""

    async def test_raising_sink(self, make_config, scripted_provider, scripted_stream):
        def sink(event):
            raise RuntimeError("sink down")

        provider = scripted_provider([scripted_stream.text("ok")])
        result = await AgentProcessor(make_config(), provider, on_event=sink).run(AgentInput(task="t"))

        assert result.status == RunStatus.COMPLETED

    async def test_events_in_stream_order(self, make_config, scripted_provider, scripted_stream, sink, events):
        provider = scripted_provider([scripted_stream.text("hello")])
        await AgentProcessor(make_config(), provider, on_event=sink).run(AgentInput(task="t"))

        assert _types(events) == ["step-start", "text", "step-finish", "snapshot", "finish"]
        assert isinstance(events[1], TextEvent)
        assert isinstance(events[2], StepFinishEvent)
        assert events[2].reason == "stop"
        assert all(event.agent_id == "test-agent" for event in events)


class TestQueuedUserMessages:
    """Queued user messages are wrapped in the outgoing request only."""

    async def test_trailing_user_message_from_memory_is_wrapped(
        self, make_config, scripted_provider, scripted_stream
    ):
        memory = InMemoryMemoryStore()
        await memory.persist("t1", "local", [HumanMessage(content="earlier"), AIMessage(content="answer")])
        provider = scripted_provider([scripted_stream.text("ok")])

        result = await AgentProcessor(make_config(), provider, memory=memory).run(
            AgentInput(task="follow up", context={"threadId": "t1"})
        )

        outgoing_user = provider.requests[0].messages[-1]
        assert "<system-reminder>" in outgoing_user.content
        assert "follow up" in outgoing_user.content
        stored_user = result.messages[3]
        assert isinstance(stored_user, HumanMessage)
        assert "<system-reminder>" not in stored_user.content
