"""
Logging configuration for Rites Keeper.

Provides structured logging with JSON and colored console output.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional


class JSONFormatter(logging.Formatter):
    """JSON log formatter for machine-readable logs."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_data["data"] = record.extra_data

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for better readability."""

    COLORS = {
        logging.DEBUG: "\033[36m",    # Cyan
        logging.INFO: "\033[32m",     # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",    # Red
        logging.CRITICAL: "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, "")
        levelname = record.levelname

        record.levelname = f"{color}{levelname}{self.RESET}"
        result = super().format(record)

        # Restore original levelname for other handlers
        record.levelname = levelname

        return result


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    json_logs: bool = False,
    stream=None,
) -> logging.Logger:
    """
    Configure process logging for the command-line entry point.

    Library users pass their own loggers to the managers instead.

    Args:
        level: Logging level (default: INFO)
        log_file: Path to log file (optional)
        json_logs: Use JSON format for file logs
        stream: Console stream (default: stderr)

    Returns:
        The configured root logger.
    """
    stream = stream or sys.stderr
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(level)

    if hasattr(stream, "isatty") and stream.isatty():
        console_format = ColoredFormatter("%(levelname)s %(message)s")
    else:
        console_format = logging.Formatter("%(levelname)s %(message)s")

    console_handler.setFormatter(console_format)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)

        if json_logs:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s [%(filename)s:%(lineno)d] %(message)s"
            ))

        root_logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger


class OperationLogger(logging.LoggerAdapter):
    """
    Logger adapter that attaches operation context to every record.

    Example:
        log = operation_logger(logger, operation="rollback", backup="b-1")
        log.info("Extracting archive")  # record.extra_data carries context
    """

    def process(self, msg: str, kwargs: Any):
        extra = dict(kwargs.get("extra") or {})
        data = dict(self.extra)
        data.update(extra.pop("extra_data", {}))
        extra["extra_data"] = data
        kwargs["extra"] = extra
        return msg, kwargs


def operation_logger(logger: logging.Logger, **context: Any) -> OperationLogger:
    """Wrap ``logger`` so records carry ``context`` as ``extra_data``."""
    return OperationLogger(logger, context)


