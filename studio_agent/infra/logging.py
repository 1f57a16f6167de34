"""Structured logging for the agent core.

setup_logging() runs once at startup. Application events go through
structlog; stdlib loggers (SQLAlchemy engine echo, asyncio) are routed
through the same renderer so one stream carries both.
"""

from __future__ import annotations

import logging
import sys

import structlog

# stdlib loggers that get their own level; the rest inherit the root level
_QUIET_LOGGERS = ("asyncio", "aiosqlite")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def setup_logging(*, json_output: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        json_output: JSON lines when True, console output for local runs otherwise.
        log_level: Minimum level for both structlog and stdlib loggers.
    """
    level = logging.getLevelName(log_level.upper())
    shared = _shared_processors()

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        exc_processor: structlog.types.Processor = structlog.processors.dict_tracebacks
    else:
        renderer = structlog.dev.ConsoleRenderer()
        exc_processor = structlog.processors.format_exc_info

    structlog.configure(
        processors=[*shared, exc_processor, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared, structlog.stdlib.add_logger_name],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            exc_processor,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
