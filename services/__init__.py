"""Service layer utilities."""

from .registry_client import CloudflareExecutor, RateLimiter  # noqa: F401

__all__ = [
    "CloudflareExecutor",
    "RateLimiter",
]
