"""Entry point when the package is executed as a module."""

import asyncio
import json
import signal
import sys

import click

from .platform.agent import (
    AgentConfig,
    AgentEvent,
    AgentInput,
    AgentProcessor,
    AgentResult,
    AgentType,
    LangChainModelProvider,
    LlmConfig,
    RunStatus,
)
from .platform.observability import configure_logging, metrics
from .platform.settings import Settings

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Complete the user's task and summarize the result."


def _print_event(event: AgentEvent) -> None:
    click.echo(json.dumps(event.to_dict(), default=str))


def _result_payload(result: AgentResult) -> dict:
    return {
        "type": "result",
        "agent_id": result.agent_id,
        "status": str(result.status),
        "final_content": result.final_content,
        "error": result.error,
        "error_kind": result.error_kind,
        "note": result.note,
        "iterations": result.iterations,
        "duration_ms": result.duration_ms,
    }


async def _run(processor: AgentProcessor, task: str) -> AgentResult:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, processor.abort)
    except NotImplementedError:
        pass
    try:
        return await processor.run(AgentInput(task=task))
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


@click.group()
def main():
    """Agent runtime command line."""


@main.command()
@click.argument("task")
@click.option("--model", required=True, help="LiteLLM model name, e.g. openai/gpt-4o-mini")
@click.option(
    "--agent-type",
    type=click.Choice([t.value for t in AgentType]),
    default=AgentType.BUILD.value,
    show_default=True,
)
@click.option("--max-iterations", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--system-prompt", default=DEFAULT_SYSTEM_PROMPT)
@click.option("--temperature", type=float, default=0.7, show_default=True)
@click.option("--json-logs/--console-logs", default=None, help="Override the configured log format")
@click.option("--print-metrics", is_flag=True, help="Print Prometheus metrics after the run")
def run(task, model, agent_type, max_iterations, system_prompt, temperature, json_logs, print_metrics):
    """Run one agent on TASK and print its events as JSON lines."""
    settings = Settings()
    configure_logging(
        settings.logging.level,
        settings.logging.json_output if json_logs is None else json_logs,
    )

    config = AgentConfig(
        id=f"{agent_type}-agent",
        type=AgentType(agent_type),
        model=model,
        system_prompt=system_prompt,
        temperature=temperature,
        max_iterations=max_iterations,
    )
    provider = LangChainModelProvider(
        LlmConfig(
            model=model,
            api_key=settings.litellm.api_key,
            base_url=settings.litellm.api_base,
        )
    )
    processor = AgentProcessor(
        config,
        provider,
        on_event=_print_event,
        retry_settings=settings.retry,
        loop_detection_settings=settings.loop_detection,
    )

    result = asyncio.run(_run(processor, task))
    click.echo(json.dumps(_result_payload(result)))
    if print_metrics:
        body, _ = metrics()
        click.echo(body.decode("utf-8"), err=True)
    if result.status == RunStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    sys.exit(main())
