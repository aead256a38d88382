"""Structured logging (structlog): console rendering plus JSON-lines audit files."""

from __future__ import annotations

import logging
from pathlib import Path

import structlog


def _level(name: str) -> int:
    numeric = logging.getLevelName(name.upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_structlog(level: str = "INFO") -> None:
    """Configure structlog for human-readable console output.

    Call once at process startup. *level* is a stdlib level name such as
    ``"DEBUG"``; unknown names fall back to INFO.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_pool(pool: str, backend: str) -> None:
    """Tag every console event of this process with the pool it manages."""
    structlog.contextvars.bind_contextvars(pool=pool, backend=backend)


def get_json_file_logger(log_path: Path, **context) -> structlog.BoundLogger:
    """Return a structlog logger that appends JSON lines to *log_path*.

    The logger is independent of the console configuration. *context* is
    bound to every event. Asking again for the same path replaces (and
    closes) the previous file handler, so one process never holds two
    handles on one audit file.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(str(log_path), mode="a")
    file_handler.setLevel(logging.DEBUG)

    stdlib_logger = logging.getLogger(f"runner_pool.audit.{log_path}")
    for old in stdlib_logger.handlers:
        old.close()
    stdlib_logger.handlers = [file_handler]
    stdlib_logger.setLevel(logging.DEBUG)
    stdlib_logger.propagate = False

    logger = structlog.wrap_logger(
        stdlib_logger,
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )
    return logger.bind(**context) if context else logger
