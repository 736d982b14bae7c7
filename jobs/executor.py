"""Contract between the worker and the side-effecting registry integration."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union

from .models import JobPayload


@dataclass(frozen=True)
class ExecutionSuccess:
    record_id: str


@dataclass(frozen=True)
class ExecutionFailure:
    """A failed attempt.

    ``retryable=False`` marks failures that another attempt cannot fix, such
    as a payload the registry rejects outright.
    """

    message: str
    retryable: bool = True


ExecutionOutcome = Union[ExecutionSuccess, ExecutionFailure]


class Executor(Protocol):
    """Performs the registration for one payload.

    Implementations bound their own latency and must tolerate being called
    again with the same payload after an earlier attempt failed.
    """

    def execute(self, payload: JobPayload) -> ExecutionOutcome:
        ...


__all__ = ["Executor", "ExecutionFailure", "ExecutionOutcome", "ExecutionSuccess"]
