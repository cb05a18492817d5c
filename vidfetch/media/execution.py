"""
The contract between the scheduler and whatever actually performs a job.

An executor starts a job and hands back an `ExecutionHandle`. The handle reports
what happens through an ordered stream of events, ending with exactly one
terminal event, and accepts a cooperative termination request as well as a
forced kill.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

from vidfetch.models.job import Job, JobStatus

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetadataProbed:
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class StageStarted:
    stage: JobStatus


@dataclass(frozen=True)
class DownloadProgress:
    percent: float


@dataclass(frozen=True)
class ArtifactsUploaded:
    urls: tuple[str, ...]


@dataclass(frozen=True)
class ExecutionSucceeded:
    pass


@dataclass(frozen=True)
class ExecutionFailed:
    message: str


@dataclass(frozen=True)
class ExecutionTerminated:
    """Confirms the work stopped after a termination request."""

    forced: bool = False


ExecutionEvent = Union[
    MetadataProbed,
    StageStarted,
    DownloadProgress,
    ArtifactsUploaded,
    ExecutionSucceeded,
    ExecutionFailed,
    ExecutionTerminated,
]

TERMINAL_EVENTS = (ExecutionSucceeded, ExecutionFailed, ExecutionTerminated)


class ExecutionHandle(ABC):
    """
    A running job as seen by the scheduler.

    Subclasses publish progress with `emit()`; the scheduler reads it back with
    `events()`. Only the first terminal event is delivered, anything emitted
    after it is dropped.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._events: asyncio.Queue[ExecutionEvent] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once a terminal event has been emitted."""
        return self._closed

    def emit(self, event: ExecutionEvent) -> None:
        if self._closed:
            log.debug(f"Dropping {event!r} for job '{self.job_id}': stream closed.")
            return
        if isinstance(event, TERMINAL_EVENTS):
            self._closed = True
        self._events.put_nowait(event)

    async def events(self) -> AsyncIterator[ExecutionEvent]:
        """Yields events in order, stopping after the terminal one."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return

    @abstractmethod
    def request_termination(self) -> None:
        """
        Asks the running work to stop. Must not block; confirmation arrives as
        an `ExecutionTerminated` event.
        """

    @abstractmethod
    def kill(self) -> None:
        """Stops the work immediately, without waiting for it to cooperate."""


class JobExecutor(ABC):
    """Starts jobs. Implementations must return without waiting on I/O."""

    @abstractmethod
    def start(self, job: Job) -> ExecutionHandle:
        """Begins running `job` and returns the handle that reports on it."""
