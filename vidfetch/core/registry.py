"""
The single source of truth for every job: the job map, the pending queue and
the set of jobs currently holding a slot. All mutation goes through one asyncio
lock, and the lock is never held while waiting on external I/O.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable, Optional

from vidfetch.exceptions import InvalidStateError, JobNotFoundError, UpdateDeferred
from vidfetch.media.execution import ExecutionHandle
from vidfetch.models.job import Job, JobStatus
from vidfetch.utils.structured_logger import JobEventLogger, StructuredLogger

from .job_queue import JobQueue

log = logging.getLogger(__name__)


class JobRegistry:
    """
    Owns job records, the FIFO queue of pending IDs and the in-progress set.

    Listeners registered with `add_listener` are called (synchronously, after
    the lock is released) whenever a slot may have become available: a job was
    registered, a job finished, or dispatch was resumed.
    """

    def __init__(
        self,
        max_finished_jobs: int = 500,
        job_logger: Optional[JobEventLogger] = None,
    ):
        """
        Args:
            max_finished_jobs: How many terminal jobs to retain before the oldest
                are evicted. 0 keeps every job.
            job_logger: Structured logger for lifecycle events.
        """
        self.max_finished_jobs = max_finished_jobs
        self.events = job_logger or JobEventLogger(StructuredLogger("vidfetch.events"))

        self._jobs: dict[str, Job] = {}
        self._queue = JobQueue()
        self._in_progress: set[str] = set()
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._dispatch_paused = False

        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)
        self._listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, job_id: str) -> Job:
        """Returns the job record, raising JobNotFoundError if it is unknown."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def queue_snapshot(self) -> list[str]:
        return self._queue.to_list()

    def in_progress_ids(self) -> frozenset[str]:
        return frozenset(self._in_progress)

    @property
    def queue_size(self) -> int:
        return self._queue.size()

    @property
    def active_count(self) -> int:
        return len(self._in_progress)

    @property
    def dispatch_paused(self) -> bool:
        return self._dispatch_paused

    def is_idle(self) -> bool:
        """True when nothing is queued and no job holds a slot."""
        return self._queue.is_empty() and not self._in_progress

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                log.error(f"[red]Registry listener {callback!r} failed: {e}[/red]")

    # ------------------------------------------------------------------
    # Public mutations
    # ------------------------------------------------------------------
    async def register(self, job: Job) -> Job:
        """Stores a new pending job and appends it to the queue."""
        async with self._changed:
            if job.id in self._jobs:
                raise InvalidStateError(f"Job with ID '{job.id}' already exists")
            if job.status != JobStatus.PENDING:
                raise InvalidStateError(
                    f"Only pending jobs can be registered, got '{job.status.value}'"
                )
            self._jobs[job.id] = job
            self._queue.push(job.id)
            queue_size = self._queue.size()
            self._changed.notify_all()

        self.events.job_added(job.id, job.url, job.type.value, queue_size)
        self._notify_listeners()
        return job

    async def cancel(self, job_id: str) -> Job:
        """
        Cancels a job.

        A queued job is removed from the queue and cancelled on the spot, so no
        process is ever started for it. A running job moves to Cancelling and its
        execution is asked to stop; the scheduler finalizes it.

        Raises:
            JobNotFoundError: If the job is unknown.
            InvalidStateError: If the job already reached a terminal state.
        """
        async with self._changed:
            job = self.get(job_id)

            if job.status.is_terminal:
                raise InvalidStateError(
                    f"Job '{job_id}' is already {job.status.value} and cannot be"
                    " cancelled"
                )
            if job.status == JobStatus.CANCELLING:
                return job

            if self._queue.delete(job_id):
                self._mark_terminal(job, JobStatus.CANCELLED)
            elif job_id in self._in_progress:
                job.status = JobStatus.CANCELLING
                job.cancel_requested.set()
                if job.handle is not None:
                    job.handle.request_termination()
            else:
                raise InvalidStateError(
                    f"Job '{job_id}' is neither queued nor running"
                )
            status = job.status
            self._changed.notify_all()

        self.events.job_cancel_requested(job_id, status.value)
        return job

    # ------------------------------------------------------------------
    # Scheduler-facing mutations
    # ------------------------------------------------------------------
    async def claim_next(self, limit: int) -> list[Job]:
        """
        Pops queued jobs in FIFO order while fewer than `limit` hold a slot and
        dispatch is not paused. Claimed jobs enter their first working stage.
        """
        claimed = []
        async with self._changed:
            while (
                not self._dispatch_paused
                and len(self._in_progress) < limit
                and not self._queue.is_empty()
            ):
                job = self._jobs[self._queue.pop()]
                self._in_progress.add(job.id)
                job.status = job.stages[0]
                claimed.append(job)
            if claimed:
                self._changed.notify_all()
        return claimed

    async def attach_handle(self, job_id: str, handle: ExecutionHandle) -> None:
        """
        Records the execution handle of a running job. If the job was cancelled
        before its handle existed, termination is requested right away.
        """
        async with self._changed:
            job = self.get(job_id)
            if job_id not in self._in_progress:
                raise InvalidStateError(f"Job '{job_id}' is not running")
            job.handle = handle
            if job.status == JobStatus.CANCELLING:
                handle.request_termination()

    async def advance(self, job_id: str, stage: JobStatus) -> bool:
        """
        Moves a running job to a working stage.

        Returns:
            True if the status changed. Stage reports for a job that is being
            cancelled are ignored.

        Raises:
            InvalidStateError: If the stage is not reachable from the current one.
        """
        async with self._changed:
            job = self.get(job_id)
            if job.status == JobStatus.CANCELLING or job_id not in self._in_progress:
                return False
            if not job.can_enter(stage):
                raise InvalidStateError(
                    f"Job '{job_id}' cannot move from {job.status.value} to"
                    f" {stage.value}"
                )
            if job.status == stage:
                return False
            job.status = stage
            self._changed.notify_all()
            return True

    async def record_metadata(
        self, job_id: str, title: Optional[str], description: Optional[str]
    ) -> None:
        async with self._changed:
            job = self.get(job_id)
            job.title = title
            job.description = description
            self._changed.notify_all()

    async def record_progress(self, job_id: str, percent: float) -> None:
        async with self._changed:
            job = self.get(job_id)
            job.progress = max(0.0, min(100.0, percent))

    async def record_artifacts(self, job_id: str, urls: Iterable[str]) -> None:
        async with self._changed:
            job = self.get(job_id)
            job.download_urls = list(urls)
            self._changed.notify_all()

    async def finish(
        self, job_id: str, status: JobStatus, error: Optional[str] = None
    ) -> Job:
        """
        Releases a running job's slot and records its terminal status. A job that
        was being cancelled always ends as Cancelled.
        """
        if not status.is_terminal:
            raise ValueError(f"'{status.value}' is not a terminal status")

        async with self._changed:
            job = self.get(job_id)
            if job_id not in self._in_progress:
                raise InvalidStateError(f"Job '{job_id}' is not running")

            self._in_progress.discard(job_id)
            if job.status == JobStatus.CANCELLING:
                status, error = JobStatus.CANCELLED, None
            self._mark_terminal(job, status, error)
            self._changed.notify_all()

        self._notify_listeners()
        return job

    def _mark_terminal(
        self, job: Job, status: JobStatus, error: Optional[str] = None
    ) -> None:
        job.status = status
        job.error = error
        job.handle = None
        job.finished_at = time.time()
        if status == JobStatus.COMPLETED:
            job.progress = 100.0

        self._finished[job.id] = None
        if self.max_finished_jobs:
            while len(self._finished) > self.max_finished_jobs:
                evicted_id, _ = self._finished.popitem(last=False)
                self._jobs.pop(evicted_id, None)
                log.debug(f"Evicted finished job '{evicted_id}' from the registry.")

    # ------------------------------------------------------------------
    # Update-manager-facing
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def exclusive_maintenance(self) -> AsyncIterator[None]:
        """
        Pauses dispatch for the duration of the block, provided no job is running.

        Raises:
            UpdateDeferred: If any job currently holds a slot.
        """
        async with self._changed:
            if self._in_progress:
                raise UpdateDeferred(
                    f"{len(self._in_progress)} download(s) in progress"
                )
            if self._dispatch_paused:
                raise UpdateDeferred("Dispatch is already paused for maintenance")
            self._dispatch_paused = True

        try:
            yield
        finally:
            async with self._changed:
                self._dispatch_paused = False
                self._changed.notify_all()
            self._notify_listeners()

    # ------------------------------------------------------------------
    # Waiting helpers
    # ------------------------------------------------------------------
    async def wait_for(
        self, predicate: Callable[[], bool], timeout: Optional[float] = None
    ) -> None:
        """Waits until `predicate` holds, re-checking after every state change."""

        async def _wait():
            async with self._changed:
                await self._changed.wait_for(predicate)

        await asyncio.wait_for(_wait(), timeout)

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        await self.wait_for(self.is_idle, timeout)
