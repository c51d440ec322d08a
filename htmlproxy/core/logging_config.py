"""Structured logging configuration.

Supports two modes via LOG_FORMAT env var:
- "json" (default for production): JSON-formatted log lines with request_id
- "text" (for development and the CLI): human-readable log lines
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from htmlproxy.middleware.request_id import get_request_id

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"


class RequestIDFilter(logging.Filter):
    """Inject request_id into every log record."""

    def filter(self, record):
        record.request_id = get_request_id()
        return True


class PlaywrightPipeFilter(logging.Filter):
    """Suppress Playwright's noisy 'pipe closed by peer' warnings.

    Tearing down a session pool while a timed-out navigation is still in
    flight makes Playwright log this once per pending write.
    """

    def filter(self, record):
        msg = record.getMessage() if hasattr(record, "getMessage") else str(record.msg)
        return "pipe closed by peer" not in msg


def configure_logging(log_format: str = "json", log_level: str = "INFO", stream=None):
    """Configure root logger with the specified format.

    Args:
        log_format: "json" or "text"
        log_level: Python log level name
        stream: Output stream (stdout by default; the CLI passes stderr)
    """
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(RequestIDFilter())
    handler.addFilter(PlaywrightPipeFilter())

    if log_format == "json":
        formatter = JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s %(request_id)s",
            rename_fields={
                "levelname": "level",
                "name": "logger",
                "asctime": "timestamp",
            },
        )
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    logging.getLogger("playwright").setLevel(logging.ERROR)
