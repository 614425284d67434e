"""
Logging configuration.

JSON lines in production, a readable format in development. The hostname and
site being provisioned are carried in context variables so every line logged
while one activation is processed can be correlated.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

hostname_ctx: ContextVar[str] = ContextVar("hostname", default="-")
site_id_ctx: ContextVar[str] = ContextVar("site_id", default="-")


@contextmanager
def activation_context(hostname: str, site_id: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with a hostname and site."""
    hostname_token = hostname_ctx.set(hostname)
    site_token = site_id_ctx.set(site_id)
    try:
        yield
    finally:
        hostname_ctx.reset(hostname_token)
        site_id_ctx.reset(site_token)


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "hostname": hostname_ctx.get(),
            "site_id": site_id_ctx.get(),
        }

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Remove empty context
        log_entry = {k: v for k, v in log_entry.items() if v and v != "-"}

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    """Readable formatter for development."""

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-32s | [%(hostname)s] %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        record.hostname = hostname_ctx.get()
        return super().format(record)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure application-wide logging."""
    root = logging.getLogger()

    # Clear existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(HumanFormatter(HumanFormatter.FORMAT, datefmt="%H:%M:%S"))

    root.addHandler(handler)
    root.setLevel(level.upper())

    # Quiet noisy third-party loggers
    for name in ("uvicorn.access", "httpcore", "httpx", "apscheduler.executors.default"):
        logging.getLogger(name).setLevel(logging.WARNING)
