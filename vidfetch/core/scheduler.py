"""
Drains the job queue under a concurrency limit and drives every running job
through its stages by consuming the execution collaborator's event stream.
"""

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Optional

from vidfetch.media.execution import (
    ArtifactsUploaded,
    DownloadProgress,
    ExecutionFailed,
    ExecutionHandle,
    ExecutionSucceeded,
    ExecutionTerminated,
    JobExecutor,
    MetadataProbed,
    StageStarted,
)
from vidfetch.models.job import Job, JobStatus
from vidfetch.utils.structured_logger import JobEventLogger

from .registry import JobRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Outcome:
    status: JobStatus
    error: Optional[str] = None


class Scheduler:
    """
    Dispatches queued jobs while fewer than `max_concurrent` are running.

    Each dispatched job gets its own driver task. Drivers translate execution
    events into registry updates and always finish the job, so a failure in one
    job never stops the dispatch loop or touches another job.
    """

    def __init__(
        self,
        registry: JobRegistry,
        executor: JobExecutor,
        max_concurrent: int = 3,
        cancel_timeout: float = 10.0,
        job_logger: Optional[JobEventLogger] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.registry = registry
        self.executor = executor
        self.max_concurrent = max_concurrent
        self.cancel_timeout = cancel_timeout
        self.events = job_logger or registry.events

        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._job_tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_count(self) -> int:
        return len(self._job_tasks)

    def wake(self) -> None:
        """Asks the dispatch loop to look for work."""
        self._wakeup.set()

    async def start(self) -> None:
        """Starts the background dispatch loop."""
        if self.running:
            return
        self.registry.add_listener(self.wake)
        self._loop_task = asyncio.create_task(self._dispatch_loop())
        self.wake()
        log.debug(f"Scheduler started with {self.max_concurrent} slot(s).")

    async def stop(self, cancel_active: bool = True) -> None:
        """
        Stops the dispatch loop. With `cancel_active`, running jobs are cancelled
        and their drivers awaited, which takes at most `cancel_timeout` seconds.
        """
        self.registry.remove_listener(self.wake)
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
        self._loop_task = None

        if cancel_active:
            for job_id in list(self._job_tasks):
                with suppress(Exception):
                    await self.registry.cancel(job_id)

        if self._job_tasks:
            await asyncio.gather(*self._job_tasks.values(), return_exceptions=True)
        log.debug("Scheduler stopped.")

    async def _dispatch_loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            try:
                await self._dispatch_ready()
            except Exception as e:
                log.error(
                    f"[red]Dispatch pass failed: {e}[/red]",
                    exc_info=log.getEffectiveLevel() == logging.DEBUG,
                )

    async def _dispatch_ready(self) -> None:
        """Claims as many queued jobs as there are free slots and starts them."""
        for job in await self.registry.claim_next(self.max_concurrent):
            self.events.job_started(
                job.id, job.url, self.registry.active_count, self.max_concurrent
            )
            try:
                handle = self.executor.start(job)
            except Exception as e:
                log.error(f"[red]✗ Could not start job '{job.id}': {e}[/red]")
                await self.registry.finish(job.id, JobStatus.FAILED, str(e))
                continue

            await self.registry.attach_handle(job.id, handle)
            task = asyncio.create_task(self._run_job(job, handle))
            self._job_tasks[job.id] = task
            task.add_done_callback(
                lambda _, job_id=job.id: self._job_tasks.pop(job_id, None)
            )

    async def _run_job(self, job: Job, handle: ExecutionHandle) -> None:
        """Drives one job to a terminal state and releases its slot."""
        started = time.monotonic()
        consumer = asyncio.create_task(self._consume_events(job, handle))
        cancel_wait = asyncio.create_task(job.cancel_requested.wait())

        try:
            done, _ = await asyncio.wait(
                {consumer, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if consumer in done:
                outcome = consumer.result()
            else:
                outcome = await self._await_termination(job, handle, consumer)
        except Exception as e:
            log.error(
                f"[red]✗ Job '{job.id}' crashed: {e}[/red]",
                exc_info=log.getEffectiveLevel() == logging.DEBUG,
            )
            handle.kill()
            consumer.cancel()
            outcome = _Outcome(JobStatus.FAILED, str(e) or type(e).__name__)
        finally:
            cancel_wait.cancel()

        finished = await self.registry.finish(job.id, outcome.status, outcome.error)
        self.events.job_finished(
            job.id, finished.status.value, time.monotonic() - started, finished.error
        )

    async def _await_termination(
        self, job: Job, handle: ExecutionHandle, consumer: asyncio.Task
    ) -> _Outcome:
        """
        Gives a cancelled job `cancel_timeout` seconds to confirm it stopped,
        then kills it. Either way the job ends Cancelled.
        """
        try:
            await asyncio.wait_for(asyncio.shield(consumer), self.cancel_timeout)
        except asyncio.TimeoutError:
            self.events.job_force_terminated(job.id, self.cancel_timeout)
            handle.kill()
            consumer.cancel()
            with suppress(asyncio.CancelledError):
                await consumer
        except Exception as e:
            log.debug(f"Job '{job.id}' errored while terminating: {e}")
        return _Outcome(JobStatus.CANCELLED)

    async def _consume_events(self, job: Job, handle: ExecutionHandle) -> _Outcome:
        """Applies execution events to the registry until a terminal one arrives."""
        stage_started = time.monotonic()
        current_stage = job.status

        async for event in handle.events():
            if isinstance(event, StageStarted):
                if await self.registry.advance(job.id, event.stage):
                    self.events.stage_completed(
                        job.id, current_stage.value, time.monotonic() - stage_started
                    )
                    current_stage, stage_started = event.stage, time.monotonic()
            elif isinstance(event, MetadataProbed):
                await self.registry.record_metadata(
                    job.id, event.title, event.description
                )
            elif isinstance(event, DownloadProgress):
                await self.registry.record_progress(job.id, event.percent)
            elif isinstance(event, ArtifactsUploaded):
                await self.registry.record_artifacts(job.id, event.urls)
            elif isinstance(event, ExecutionSucceeded):
                if job.status == JobStatus.CANCELLING:
                    return _Outcome(JobStatus.CANCELLED)
                if job.status != job.stages[-1]:
                    return _Outcome(
                        JobStatus.FAILED,
                        f"Execution reported success while {job.status.value}",
                    )
                if not job.download_urls:
                    return _Outcome(
                        JobStatus.FAILED,
                        "Execution reported success without uploading any files",
                    )
                self.events.stage_completed(
                    job.id, current_stage.value, time.monotonic() - stage_started
                )
                return _Outcome(JobStatus.COMPLETED)
            elif isinstance(event, ExecutionFailed):
                return _Outcome(JobStatus.FAILED, event.message)
            elif isinstance(event, ExecutionTerminated):
                if job.cancel_requested.is_set():
                    return _Outcome(JobStatus.CANCELLED)
                return _Outcome(JobStatus.FAILED, "Execution was terminated unexpectedly")

        return _Outcome(
            JobStatus.FAILED, "Execution ended without reporting an outcome"
        )
