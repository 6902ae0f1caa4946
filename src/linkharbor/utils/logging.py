"""Structured logging configuration for LinkHarbor."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Minimum level name, e.g. "INFO" or "debug".
        json_logs: Render one JSON object per line. The CLI turns this off
            for interactive use and gets structlog's console renderer.
        stream: Where log lines go. Defaults to stdout for the API server;
            the CLI passes stderr so the run report stays on stdout.
    """
    level = getattr(logging, log_level.upper())
    stream = stream or sys.stdout

    logging.basicConfig(format="%(message)s", stream=stream, level=level)

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a structured logger instance.

    Note: Returns Any because structlog.get_logger() returns a dynamically
    configured logger type that varies based on setup_logging() configuration.
    """
    return structlog.get_logger(name)


@contextmanager
def article_context(article_id: str, url: str) -> Iterator[None]:
    """Bind the article being processed to every log line inside the block."""
    with structlog.contextvars.bound_contextvars(article_id=article_id, url=url):
        yield
