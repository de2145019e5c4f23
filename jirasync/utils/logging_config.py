"""structlog setup for sync runs: JSON lines for schedulers, colored console for terminals."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

import structlog

from jirasync.models.config import LoggingConfig

# HTTP libraries log every request at DEBUG/INFO.
_NOISY_LOGGERS = ("urllib3", "requests", "atlassian")

_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 5


def _event_processors() -> list[Any]:
    """Processors that enrich every event before rendering."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ],
        ),
    ]


def _renderer(json_logs: bool) -> Any:
    if json_logs:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=True,
        exception_formatter=structlog.dev.plain_traceback,
    )


def _install_stdlib_handlers(level: int, log_file: str | None) -> None:
    """Route stdlib records to stdout, and to a rotating file if requested."""
    logging.basicConfig(format="%(message)s", level=level, stream=sys.stdout, force=True)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file, maxBytes=_LOG_FILE_MAX_BYTES, backupCount=_LOG_FILE_BACKUPS
        )
        file_handler.setLevel(level)
        logging.root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    log_file: str | None = None,
) -> None:
    """
    Configure structured logging for a sync process.

    Safe to call repeatedly; each call replaces the previous handlers.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown names fall back to INFO)
        json_logs: JSON lines if True, console rendering otherwise
        log_file: Also append to this file, rotated at 10MB with 5 backups

    Example:
        >>> configure_logging(log_level="DEBUG", json_logs=False)
        >>> structlog.stdlib.get_logger().info("sync_started", sync_type="incremental")
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    _install_stdlib_handlers(level, log_file)

    structlog.configure(
        processors=[*_event_processors(), _renderer(json_logs)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_from_config(config: LoggingConfig, verbose: bool = False) -> None:
    """Apply a LoggingConfig; ``verbose`` forces DEBUG."""
    configure_logging(
        log_level="DEBUG" if verbose else config.log_level,
        json_logs=config.json_logs,
        log_file=config.log_file,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Logger bound to ``name`` (the calling module if None)."""
    return structlog.stdlib.get_logger(name)
