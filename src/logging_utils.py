"""Consolidated structured logging configuration for the safeops core."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from config import LoggingConfig

# Log file path
LOG_PATH = Path(os.getenv("LOG_PATH", Path(__file__).resolve().parent.parent / "logs" / "safeops.log"))

REDACTED = "***REDACTED***"
SECRET_KEY_FRAGMENTS = (
    "secret",
    "password",
    "token",
    "private_key",
    "privatekey",
    "accesskey",
    "access_key",
    "credential",
    "encrypted",
)


def redact(value: Any) -> Any:
    """Replace values under secret-looking keys, recursively."""
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            lowered = str(key).lower().replace("-", "_")
            if any(fragment in lowered for fragment in SECRET_KEY_FRAGMENTS):
                cleaned[key] = REDACTED
            else:
                cleaned[key] = redact(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging with correlation IDs and extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with structured extra data."""
        log_data = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "extra": redact(getattr(record, "extra", {})),
        }
        return json.dumps(log_data, default=str)


def setup_logger(
    name: str = "safeops",
    level: int = logging.INFO,
    log_path: Path = LOG_PATH,
    json_format: bool = True,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure structured logging with file and optional console output.

    - File output: JSON-formatted logs to logs/safeops.log (plain text when json_format is off)
    - Console output: Human-readable format for debugging

    Args:
        name: Logger name (default: "safeops")
        level: Logging level (default: INFO)
        log_path: Log file location
        json_format: Write the file log as JSON lines
        console_output: Also log to stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Prevent duplicate handlers if already configured
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False

    log_path.parent.mkdir(parents=True, exist_ok=True)

    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(JSONFormatter() if json_format else text_formatter)
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(text_formatter)
        logger.addHandler(console_handler)

    return logger


def configure_logging(config: LoggingConfig, name: str = "safeops") -> logging.Logger:
    """Rebuild the named logger's handlers from a LoggingConfig."""
    target = logging.getLogger(name)
    for handler in list(target.handlers):
        target.removeHandler(handler)
        handler.close()
    return setup_logger(
        name,
        level=logging.getLevelName(config.log_level.upper()),
        log_path=Path(config.log_path),
        json_format=config.json_format,
        console_output=config.console_output,
    )


# Initialize global logger instance
logger = setup_logger()
