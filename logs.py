"""structlog setup. Call configure_logging() once at process entry."""

import logging
import os

import structlog


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog.

    Args:
        level: debug/info/warning/error; defaults to SETTLE_LOG_LEVEL or info.
        fmt: "json" for one JSON object per line, anything else for the
             console renderer; defaults to SETTLE_LOG_FORMAT or console.
    """
    level = (level or os.environ.get("SETTLE_LOG_LEVEL", "info")).upper()
    fmt = fmt or os.environ.get("SETTLE_LOG_FORMAT", "console")
    level_num = getattr(logging, level, logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
