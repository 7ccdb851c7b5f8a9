"""
Message types exchanged between running fetch strategies and the engine.

Strategies never touch the queue store. They post these messages to a
`JobChannel`, and the engine's single dispatcher applies them in order.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .jobs import JobKind, JobStatus


@dataclass
class ProgressEvent:
    """Changed progress fields for a job. ``broadcast`` asks for an observer update."""
    job_id: str
    attempt: int
    fields: Dict[str, Any] = field(default_factory=dict)
    broadcast: bool = True


@dataclass
class StatusEvent:
    """A status transition requested by the running strategy."""
    job_id: str
    attempt: int
    status: JobStatus
    reset_progress: bool = False
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExitEvent:
    """The strategy finished. Either success, or a request to re-queue as another kind."""
    job_id: str
    attempt: int
    success: bool = True
    reclassify_to: Optional[JobKind] = None
    new_url: Optional[str] = None


@dataclass
class ErrorEvent:
    """The strategy failed with an already-classified message."""
    job_id: str
    attempt: int
    message: str
    retryable: bool = True


JobEvent = Union[ProgressEvent, StatusEvent, ExitEvent, ErrorEvent]


class JobChannel:
    """
    The sending side of one job's message channel.

    Stamps every message with the job id and the dispatch attempt so the
    dispatcher can discard anything that arrives after the job was cancelled
    or re-dispatched.
    """
    def __init__(self, job_id: str, attempt: int, queue: "asyncio.Queue[JobEvent]"):
        self.job_id = job_id
        self.attempt = attempt
        self._queue = queue

    def progress(self, broadcast: bool = True, **fields):
        self._queue.put_nowait(ProgressEvent(self.job_id, self.attempt, fields, broadcast))

    def status(self, status: JobStatus, reset_progress: bool = False, **fields):
        self._queue.put_nowait(StatusEvent(self.job_id, self.attempt, JobStatus(status), reset_progress, fields))

    def exited(self, success: bool = True, reclassify_to: Optional[JobKind] = None, new_url: Optional[str] = None):
        self._queue.put_nowait(ExitEvent(self.job_id, self.attempt, success, reclassify_to, new_url))

    def error(self, message: str, retryable: bool = True):
        self._queue.put_nowait(ErrorEvent(self.job_id, self.attempt, message, retryable))
