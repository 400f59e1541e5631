"""LLM client and model provider implementation using LiteLLM."""

import logging
import uuid
from collections.abc import AsyncIterator, Mapping
from typing import Any, Self

from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    ToolMessage,
    message_chunk_to_message,
)
from langchain_core.runnables import Runnable, RunnableConfig
from langchain_core.tools import BaseTool
from langchain_litellm import ChatLiteLLM

from agent_runtime.platform.agent.chunks import (
    Finish,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StepFinish,
    StepStart,
    StreamChunk,
    TextDelta,
    ToolCall,
    ToolError,
    ToolResult,
)
from agent_runtime.platform.agent.config import LlmConfig
from agent_runtime.platform.agent.conversation import message_text
from agent_runtime.platform.agent.errors import RunCancelledError
from agent_runtime.platform.agent.metrics import (
    ToolMetricsLabels,
    collect_tool_metrics,
    record_agent_tokens,
)
from agent_runtime.platform.agent.protocol import ModelRequest
from agent_runtime.platform.agent.stream import tool_message_content

logger = logging.getLogger(__name__)

INVALID_TOOL_NAME = "invalid"
TOOL_CALLS_FINISH_REASON = "tool-calls"
LENGTH_FINISH_REASON = "length"


class LlmClient(Runnable):
    """LLM client that wraps ChatLiteLLM as a Runnable.

    Provides a consistent interface for LLM interactions with:
    - Full LCEL compatibility (pipe operator, chains)
    - Automatic token metrics recording
    - Tool binding support
    """

    def __init__(
        self,
        agent_id: str,
        model_name: str,
        api_key: str | None,
        api_base: str | None,
        temperature: float,
        llm=None,
    ):
        """Initialize the LLM client.

        Args:
            agent_id: Agent identifier used for metric labels
            model_name: Model identifier
            api_key: API key for authentication
            api_base: Base URL for the LLM proxy
            temperature: Sampling temperature
            llm: Optional pre-configured LLM instance (for bind_tools)
        """
        self._agent_id = agent_id
        self._model_name = model_name
        self._api_key = api_key
        self._api_base = api_base
        self._temperature = temperature
        self._llm = llm or ChatLiteLLM(
            model_name=model_name,
            api_key=api_key,
            api_base=api_base,
            temperature=temperature,
            streaming=True,
        )

    @property
    def model_name(self) -> str:
        """The model name/identifier."""
        return self._model_name

    def bind_tools(self, tools: list[BaseTool]) -> Self:
        """Return a new client with tools bound.

        Args:
            tools: Tools to bind to the LLM

        Returns:
            New LlmClient instance with tools bound
        """
        return LlmClient(
            agent_id=self._agent_id,
            model_name=self._model_name,
            api_key=self._api_key,
            api_base=self._api_base,
            temperature=self._temperature,
            llm=self._llm.bind_tools(tools),
        )

    @staticmethod
    def extract_tokens(message: AIMessage) -> tuple[int, int]:
        """Extract token counts from an AIMessage's usage metadata.

        Args:
            message: AIMessage from LLM response

        Returns:
            Tuple of (input_tokens, output_tokens), defaults to (0, 0) if unavailable
        """
        usage = getattr(message, "usage_metadata", None)
        if not usage:
            return 0, 0
        return usage.get("input_tokens", 0), usage.get("output_tokens", 0)

    def record_usage(self, message: AIMessage) -> None:
        input_tokens, output_tokens = self.extract_tokens(message)
        record_agent_tokens(self._agent_id, self._model_name, input_tokens, output_tokens)

    def invoke(self, input, config: RunnableConfig | None = None, **kwargs):
        """Invoke the LLM synchronously.

        Args:
            input: Messages to send to the LLM
            config: Optional runnable config
            **kwargs: Additional arguments passed to underlying LLM

        Returns:
            The LLM's response message
        """
        response = self._llm.invoke(input, config=config, **kwargs)
        self.record_usage(response)
        return response

    async def ainvoke(self, input, config: RunnableConfig | None = None, **kwargs):
        """Invoke the LLM asynchronously.

        Args:
            input: Messages to send to the LLM
            config: Optional runnable config
            **kwargs: Additional arguments passed to underlying LLM

        Returns:
            The LLM's response message
        """
        response = await self._llm.ainvoke(input, config=config, **kwargs)
        self.record_usage(response)
        return response

    async def astream(
        self, input, config: RunnableConfig | None = None, **kwargs
    ) -> AsyncIterator[AIMessageChunk]:
        """Stream message chunks from the LLM.

        Token usage is not recorded here; the caller records it once the
        chunks are aggregated.
        """
        async for chunk in self._llm.astream(input, config=config, **kwargs):
            yield chunk


def _finish_reason(message: AIMessage) -> str:
    if message.tool_calls:
        return TOOL_CALLS_FINISH_REASON
    declared = (message.response_metadata or {}).get("finish_reason")
    if declared == LENGTH_FINISH_REASON:
        return LENGTH_FINISH_REASON
    return "stop"


class LangChainModelStream:
    """One streaming generation over a LangChain chat model.

    Yields the step boundary, text and reasoning deltas as they arrive,
    then executes the materialized tool calls in order. ``response()``
    returns the assistant message followed by one tool message per call.
    """

    def __init__(
        self,
        client: LlmClient,
        request: ModelRequest,
    ) -> None:
        self._client = client
        self._request = request
        self._response: list[BaseMessage] | None = None

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self._chunks()

    async def response(self) -> list[BaseMessage]:
        if self._response is None:
            raise RuntimeError("Response requested before the stream was consumed")
        return list(self._response)

    def _check_abort(self) -> None:
        if self._request.abort.is_set():
            raise RunCancelledError(self._request.agent_id)

    async def _chunks(self) -> AsyncIterator[StreamChunk]:
        yield StepStart()

        kwargs: dict[str, Any] = {}
        if self._request.context.headers:
            kwargs["extra_headers"] = dict(self._request.context.headers)

        aggregate: AIMessageChunk | None = None
        reasoning_id: str | None = None
        async for chunk in self._client.astream(self._request.messages, **kwargs):
            self._check_abort()
            aggregate = chunk if aggregate is None else aggregate + chunk

            reasoning = (chunk.additional_kwargs or {}).get("reasoning_content")
            if reasoning:
                if reasoning_id is None:
                    reasoning_id = f"reasoning-{uuid.uuid4().hex[:12]}"
                    yield ReasoningStart(id=reasoning_id)
                yield ReasoningDelta(id=reasoning_id, text=str(reasoning))

            text = message_text(chunk)
            if text:
                if reasoning_id is not None:
                    yield ReasoningEnd(id=reasoning_id)
                    reasoning_id = None
                yield TextDelta(text=text)

        if reasoning_id is not None:
            yield ReasoningEnd(id=reasoning_id)

        message = message_chunk_to_message(aggregate) if aggregate is not None else AIMessage(content="")
        self._client.record_usage(message)
        response: list[BaseMessage] = [message]

        for tool_call in message.tool_calls:
            self._check_abort()
            call_id = tool_call.get("id") or f"call_{uuid.uuid4().hex[:24]}"
            name = tool_call["name"]
            args = tool_call.get("args") or {}
            yield ToolCall(tool_call_id=call_id, tool_name=name, input=args)

            output, error = await self._execute(name, args)
            if error is not None:
                yield ToolError(tool_call_id=call_id, tool_name=name, error=error, input=args)
                response.append(
                    ToolMessage(
                        content=f"Error: {error}",
                        tool_call_id=call_id,
                        name=name,
                        status="error",
                    )
                )
            else:
                yield ToolResult(tool_call_id=call_id, tool_name=name, output=output, input=args)
                response.append(
                    ToolMessage(
                        content=tool_message_content(output),
                        tool_call_id=call_id,
                        name=name,
                    )
                )

        usage = dict(message.usage_metadata) if message.usage_metadata else None
        reason = _finish_reason(message)
        yield StepFinish(finish_reason=reason, usage=usage)
        yield Finish(finish_reason=reason, usage=usage)
        self._response = response

    def _resolve_tool(self, name: str) -> BaseTool | None:
        tools: Mapping[str, BaseTool] = self._request.tools or {}
        if name in tools:
            return tools[name]
        lowered = name.lower()
        if lowered != name and lowered in tools:
            logger.info("Repaired tool name %s -> %s", name, lowered)
            return tools[lowered]
        return tools.get(INVALID_TOOL_NAME)

    async def _execute(self, name: str, args: dict[str, Any]) -> tuple[Any, Exception | None]:
        tool = self._resolve_tool(name)
        if tool is None:
            return None, LookupError(f"Unknown tool: {name}")

        async with collect_tool_metrics(ToolMetricsLabels(self._request.agent_id, tool.name)) as tool_metrics:
            try:
                if tool.name == INVALID_TOOL_NAME and name != INVALID_TOOL_NAME:
                    output = await tool.ainvoke({"tool": name, "error": f"Unknown tool: {name}"})
                else:
                    output = await tool.ainvoke(args)
            except Exception as exc:
                logger.warning("Tool %s failed: %s", name, exc)
                tool_metrics.mark_error()
                return None, exc
            if isinstance(output, Mapping) and "error" in output:
                tool_metrics.mark_error()
        return output, None


class LangChainModelProvider:
    """ModelProvider backed by LiteLLM through LangChain.

    Usage:
        provider = LangChainModelProvider(LlmConfig(model="openai/gpt-4o-mini"))
        stream = await provider.stream(request)
    """

    def __init__(self, llm_config: LlmConfig) -> None:
        self._llm_config = llm_config

    def _client(self, request: ModelRequest) -> LlmClient:
        model = request.context.model_id or request.model or self._llm_config.model
        provider_id = request.context.provider_id
        if provider_id and not model.startswith(f"{provider_id}/"):
            model = f"{provider_id}/{model}"
        client = LlmClient(
            agent_id=request.agent_id,
            model_name=model,
            api_key=self._llm_config.api_key,
            api_base=self._llm_config.base_url,
            temperature=request.temperature,
        )
        if request.tools:
            client = client.bind_tools(list(request.tools.values()))
        return client

    async def stream(self, request: ModelRequest) -> LangChainModelStream:
        return LangChainModelStream(self._client(request), request)
