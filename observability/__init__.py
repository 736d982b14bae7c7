"""Observability helpers."""

from .logger import (  # noqa: F401
    bind_log_context,
    configure_logging,
    get_logger,
    log_context,
    log_transition,
    reset_log_context,
)
from .metrics import get_registry  # noqa: F401

__all__ = [
    "bind_log_context",
    "configure_logging",
    "get_logger",
    "get_registry",
    "log_context",
    "log_transition",
    "reset_log_context",
]
