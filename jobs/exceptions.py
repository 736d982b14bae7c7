"""Exceptions raised by the job pipeline."""
from __future__ import annotations


class JobPipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidTransitionError(JobPipelineError):
    """Raised when a job is moved out of a terminal status or into an illegal one."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class InfrastructureError(JobPipelineError):
    """The queue or status store could not be reached."""


class StoreUnavailableError(InfrastructureError):
    pass


class QueueUnavailableError(InfrastructureError):
    pass


__all__ = [
    "JobPipelineError",
    "InvalidTransitionError",
    "InfrastructureError",
    "StoreUnavailableError",
    "QueueUnavailableError",
]
