"""Structured logging configuration using structlog.

This module provides structured logging with JSON output for production
and colored console output for local development. Every entry logged
during an agent run carries the run id and the agent identity, from
structlog and stdlib loggers alike.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog

# Context variable for the active agent run - propagates across async boundaries
run_id_ctx: ContextVar[str | None] = ContextVar("run_id", default=None)


def add_run_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Processor that adds run_id to every log entry."""
    run_id = run_id_ctx.get()
    if run_id:
        event_dict.setdefault("run_id", run_id)
    return event_dict


def configure_logging(log_level: str, json_output: bool = True) -> None:
    """Configure structlog with appropriate processors and renderer.

    Args:
        log_level: Logging level (INFO, DEBUG, etc.)
        json_output: True for JSON output, False for console
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_run_id,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    # Events go to stdout, logs to stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        A bound structlog logger
    """
    return structlog.get_logger(name)


@contextmanager
def run_logging_context(run_id: str, agent_id: str, agent_type: str) -> Iterator[None]:
    """Tag every log entry emitted inside the block with the active run.

    Args:
        run_id: Identifier of the run
        agent_id: Agent executing the run
        agent_type: Agent type
    """
    token = run_id_ctx.set(run_id)
    try:
        with structlog.contextvars.bound_contextvars(agent_id=agent_id, agent_type=agent_type):
            yield
    finally:
        run_id_ctx.reset(token)
