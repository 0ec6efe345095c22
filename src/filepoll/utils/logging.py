"""
Logging configuration for filepoll.

Console output goes through Rich, files get a plain parseable format and
structured JSON is available for log shippers.
"""

import logging
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler


class FileFormatter(logging.Formatter):
    """Formatter for file logs - clean and parseable."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(levelname)-8s] %(name)s%(correlation)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, tagging it with the execution id when one is set."""
        correlation_id = getattr(record, "correlation_id", None)
        record.correlation = f" [{correlation_id}]" if correlation_id else ""
        return super().format(record)


# Map string level names to logging constants
LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _parse_level(level: str | int) -> int:
    """
    Parse logging level from string or int.

    Args:
        level: Logging level as string (DEBUG, INFO, etc.) or int

    Returns:
        Logging level constant
    """
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level_upper = level.upper()
        if level_upper in LEVEL_MAP:
            return LEVEL_MAP[level_upper]
    # Default to INFO if invalid
    return logging.INFO


def setup_logging(
    level: str | int = logging.INFO,
    log_file: str | Path | None = None,
    file_mode: str = "a",
    console: Console | None = None,
    console_enabled: bool = True,
    console_type: str = "rich",
) -> logging.Logger:
    """
    Setup logging configuration for filepoll.

    Args:
        level: Logging level as string (DEBUG, INFO, etc.) or int (default: INFO)
        log_file: Optional file path to write logs to (default: None, console only)
        file_mode: File mode for file handler - 'a' for append, 'w' for overwrite
        console: Optional Rich Console instance to use
        console_enabled: Whether to enable console logging
        console_type: 'rich' for RichHandler, 'json' for structured output, 'plain' otherwise

    Returns:
        Logger instance
    """
    from filepoll.observability.structured_logging import CorrelationIdFilter, StructuredFormatter

    logger = logging.getLogger("filepoll")

    # Only clear handlers from this specific logger, not root or child loggers
    logger.handlers.clear()

    level_int = _parse_level(level)
    logger.setLevel(level_int)

    if console_enabled:
        handler: logging.Handler
        if console_type == "rich":
            handler = RichHandler(
                console=console or Console(stderr=True),
                level=level_int,
                show_time=True,
                show_path=False,
                markup=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                log_time_format="[%X]",
                omit_repeated_times=False,
            )
        else:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(level_int)
            if console_type == "json":
                handler.setFormatter(StructuredFormatter())
            else:
                handler.setFormatter(FileFormatter())
        handler.addFilter(CorrelationIdFilter())
        logger.addHandler(handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode=file_mode)
        # File captures everything the logger lets through
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(FileFormatter())
        file_handler.addFilter(CorrelationIdFilter())
        logger.addHandler(file_handler)

    return logger


def setup_logging_from_config(
    config: dict[str, Any], project_dir: Path | None = None, console: Console | None = None
) -> logging.Logger:
    """
    Setup logging from the ``logging`` section of config.yaml.

    Args:
        config: Configuration dictionary (logging keys live under 'logging')
        project_dir: Optional project directory for resolving relative log file paths
        console: Optional Rich Console instance for RichHandler

    Returns:
        Logger instance
    """
    logging_config = config.get("logging") or {}

    level = logging_config.get("level", logging.INFO)
    file_mode = logging_config.get("file_mode", "a")

    log_file = None
    if logging_config.get("file_enabled", False):
        log_file = Path(logging_config.get("file") or "logs/filepoll.log")
        if project_dir and not log_file.is_absolute():
            log_file = project_dir / log_file

    return setup_logging(
        level=level,
        log_file=log_file,
        file_mode=file_mode,
        console=console,
        console_enabled=logging_config.get("console_enabled", True),
        console_type=logging_config.get("console_type", "rich"),
    )


def get_logger(name: str = "filepoll") -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name, conventionally ``filepoll.<area>``

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    # Child loggers propagate so the "filepoll" handlers see their records
    logger.propagate = True
    return logger
