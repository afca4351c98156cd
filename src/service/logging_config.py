from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, TextIO

SERVICE_NAME = "disposal-service"

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
# Actor resolved from the API key of the current request; empty for anonymous calls.
current_actor: ContextVar[str] = ContextVar("current_actor", default="")

# Client libraries that log every reconnect attempt at INFO.
_NOISY_LOGGERS = ("aiokafka", "apscheduler.executors.default", "httpx")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] cid=%(correlation_id)s actor=%(actor)s %(message)s"


class RequestContextFilter(logging.Filter):
    """Stamp each record with the correlation id and actor of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("")
        record.actor = current_actor.get("") or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or correlation_id.get(""),
        }
        actor = getattr(record, "actor", None) or current_actor.get("")
        if actor and actor != "-":
            entry["actor"] = actor
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        extra = getattr(record, "extra_data", None)
        if extra is not None:
            entry["data"] = extra
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json", stream: TextIO | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
