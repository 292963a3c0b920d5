"""Logging Configuration for the analysis worker

This module provides centralized logging configuration using structlog with JSON output.
Every component logs snake_case events with keyword context; errors carry full
stack traces when logged with exc_info=True.

Usage:
    >>> from botcheck.backend.utils.logging_config import setup_logging
    >>> setup_logging()
    >>> import structlog
    >>> logger = structlog.get_logger()
    >>> logger.info("request_claimed", request_id="abc123", platform="reddit")
"""

import logging
import os
import sys
from pathlib import Path

import structlog


def setup_logging(
    log_dir: str = "logs",
    log_filename: str = "worker.log",
    console_level: str = None,
) -> None:
    """Configure structlog with JSON renderer, file output and console output.

    Sets up both Python stdlib logging and structlog to write JSON-formatted
    log entries to <log_dir>/<log_filename>. Creates the log directory if it
    doesn't exist.

    Args:
        log_dir: Directory for log files (default: "logs")
        log_filename: Name of the log file (default: "worker.log")
        console_level: Console handler level name; defaults to the LOG_LEVEL
            environment variable, then INFO

    Log entry format (JSON):
        {
            "event": "classifier_batch_complete",
            "level": "info",
            "timestamp": "2026-02-10T12:34:56.789Z",
            "logger": "botcheck.classifiers",
            ...additional context fields...
        }
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    log_file = log_path / log_filename

    if console_level is None:
        console_level = os.environ.get("LOG_LEVEL", "INFO")
    level = logging.getLevelName(console_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Final JSON rendering happens in the stdlib formatter
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared_processors,
    )

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # httpx logs every request at INFO; keep it out of the worker log
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str = None):
    """Get a configured structlog logger instance.

    Args:
        name: Logger name (typically __name__). If None, returns root logger.

    Returns:
        Configured structlog logger ready for use (BoundLoggerLazyProxy)
    """
    return structlog.get_logger(name)
