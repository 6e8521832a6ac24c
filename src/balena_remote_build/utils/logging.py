from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, TextIO, cast

import structlog

if TYPE_CHECKING:
    from balena_remote_build.core.config import ClientConfig


def configure_logging(
    level: str = "INFO",
    json: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for the remote build client.

    Logs go to stderr by default so they never interleave with the build
    output the progress UI writes to stdout.

    Args:
        level: Standard logging level string, e.g. "DEBUG", "INFO", "WARNING".
        json: If True, render log entries as JSON. If False, use coloured console output.
        stream: Where to write log records. Defaults to ``sys.stderr``.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    out = stream or sys.stderr

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def configure_from_config(config: ClientConfig, json: bool = False) -> None:
    """Configure logging from a :class:`ClientConfig`; ``debug`` forces DEBUG."""
    configure_logging("DEBUG" if config.debug else config.log_level, json=json)


def get_logger(name: str) -> structlog.BoundLogger:
    """Return a named structlog logger.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.
    """
    return cast(structlog.BoundLogger, structlog.get_logger(name))
