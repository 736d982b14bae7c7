"""JSON-lines logging with per-request and per-job context fields."""
from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping

_CONTEXT: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar("log_context", default={})
_CONFIGURED = False

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Field precedence: the fixed header, then ``extra`` fields, then whatever
    the current log context holds (trace id on requests, job id in the worker).
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RECORD_ATTRS:
                continue
            payload.setdefault(key, value)
        for key, value in _CONTEXT.get().items():
            if value is not None:
                payload.setdefault(key, value)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO")
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def bind_log_context(**fields: Any) -> contextvars.Token:
    """Add fields to every record logged from the current context."""

    return _CONTEXT.set({**_CONTEXT.get(), **fields})


def reset_log_context(token: contextvars.Token) -> None:
    _CONTEXT.reset(token)


def current_log_context() -> Mapping[str, Any]:
    return dict(_CONTEXT.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    token = bind_log_context(**fields)
    try:
        yield
    finally:
        reset_log_context(token)


def log_transition(logger: logging.Logger, *, job_id: str, status: str, **details: Any) -> None:
    """Record one job status write."""

    logger.info(
        "job_status_written",
        extra={"job_id": job_id, "job_status": status, "details": details or None},
    )
