"""Logging configuration with structured JSON formatter.

The library logs through standard named loggers under the `mongotest`
namespace and never configures handlers on import. Applications and test
suites that want structured output call `configure_logging()`, which
installs `LOGGING_CONFIG` via `logging.config.dictConfig`.
"""

import json
import logging
import logging.config
from typing import Any

# Standard LogRecord attributes that are either emitted explicitly or internal
_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "error",
    }
)


class CustomJSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging.

    This formatter converts log records to JSON format, including:
    - Standard log fields (time, level, message, etc.)
    - Error information passed as `extra={"error": ...}`, with the
      traceback attached when the record carries exception info
    - All extra attributes passed via the extra parameter
    """

    def __init__(self, fmt: str) -> None:
        """Initialize the formatter.

        Args:
            fmt: Format string (used for asctime, but output is JSON).
        """
        logging.Formatter.__init__(self, fmt)

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON.

        Args:
            record: The log record to format.

        Returns:
            JSON string representation of the log record.
        """
        logging.Formatter.format(self, record)
        return json.dumps(self.get_log(record), indent=None, default=str)

    def get_log(self, record: logging.LogRecord) -> dict[str, Any]:
        """Extract log data from record into a dictionary.

        Args:
            record: The log record to extract data from.

        Returns:
            Dictionary containing log data.
        """
        d: dict[str, Any] = {
            "time": record.asctime,
            "process_id": record.process,
            "thread_name": record.threadName,
            "level": record.levelname,
            "logger_name": record.name,
            "pathname": record.pathname,
            "line": record.lineno,
            "message": record.message,
        }

        error_data = getattr(record, "error", None)
        if isinstance(error_data, dict):
            error_dict: dict[str, Any] = error_data.copy()
            if record.exc_info:
                error_dict["trace"] = self.formatException(record.exc_info)
            d["error"] = error_dict
        elif error_data is not None:
            d["error"] = error_data
        elif record.exc_info:
            d["trace"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                d[key] = value

        return d


LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,  # Keep existing loggers, just configure them
    "formatters": {
        "standard": {"()": lambda: CustomJSONFormatter(fmt="%(asctime)s")},
    },
    "handlers": {
        "default": {
            "formatter": "standard",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "mongotest": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "docker": {
            "handlers": ["default"],
            "level": "WARNING",
            "propagate": False,
        },
        "urllib3": {
            "handlers": ["default"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}


def configure_logging(level: str | int | None = None) -> None:
    """Install `LOGGING_CONFIG`, optionally overriding the mongotest level.

    Args:
        level: Level for the `mongotest` logger (name or number). Defaults
            to the configured `MONGOTEST_LOG_LEVEL`.
    """
    if level is None:
        from mongotest.config import get_settings

        level = get_settings().log_level
    config = {**LOGGING_CONFIG, "loggers": {**LOGGING_CONFIG["loggers"]}}
    config["loggers"]["mongotest"] = {**config["loggers"]["mongotest"], "level": level}
    logging.config.dictConfig(config)
