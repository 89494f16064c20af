"""Structured logging for the graph rule classifier.

Log lines are structlog events. Two context variables tag them:
- classification_batch_id: set once per bulk run, inherited by every worker
- thread_id: set while one thread is being classified, so matcher and
  condition events can be traced back to the thread that caused them

asyncio tasks copy the context when created, so a worker task (and the
wait_for task wrapping each thread) sees the values bound by its parent.

Usage:
    from graphclassifier.core.logging import get_logger, thread_context

    logger = get_logger(__name__)

    with thread_context(thread.id):
        logger.info("rule_matched", rule_id=rule.id)  # carries thread_id
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

_correlation_id: ContextVar[str | None] = ContextVar("classification_batch_id", default=None)
_thread_id: ContextVar[str | None] = ContextVar("thread_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the classification_batch_id for the current context (None clears it)."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def get_thread_id() -> str | None:
    """Id of the thread being classified in the current context, if any."""
    return _thread_id.get()


@contextmanager
def thread_context(thread_id: str | None) -> Iterator[None]:
    """Tag log events emitted inside the block with thread_id."""
    token = _thread_id.set(thread_id)
    try:
        yield
    finally:
        _thread_id.reset(token)


def add_classification_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor adding the batch and thread ids.

    An explicit thread_id passed to the log call wins over the context.
    """
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["classification_batch_id"] = correlation_id
    thread_id = _thread_id.get()
    if thread_id is not None:
        event_dict.setdefault("thread_id", thread_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog on top of stdlib logging (stdout).

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines for the API server, console rendering for the CLI
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_classification_context,
    ]

    if json_output:
        renderers: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
