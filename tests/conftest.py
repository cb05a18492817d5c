"""
Shared test fixtures.

Provides: a scriptable fake executor, a fake release feed, fake yt-dlp
executables written as shell scripts, and an `eventually` polling helper.
"""

import asyncio
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest

from vidfetch.core.registry import JobRegistry
from vidfetch.core.scheduler import Scheduler
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
from vidfetch.models.config import ServiceConfig
from vidfetch.models.job import Job, JobStatus
from vidfetch.models.update import ReleaseDescriptor
from vidfetch.updater.release_feed import ReleaseFeed


class FakeHandle(ExecutionHandle):
    """An execution the test drives by hand."""

    def __init__(self, job: Job, honor_termination: bool = True):
        super().__init__(job.id)
        self.job = job
        self.honor_termination = honor_termination
        self.termination_requested = False
        self.killed = False

    def request_termination(self) -> None:
        self.termination_requested = True
        if self.honor_termination:
            self.emit(ExecutionTerminated())

    def kill(self) -> None:
        self.killed = True
        self.emit(ExecutionTerminated(forced=True))

    def complete(self, urls: Iterable[str] = ()) -> None:
        """Walks every stage of the job's pipeline and reports success."""
        urls = tuple(urls) or (f"http://storage.test/videos/{self.job.id}/video.mp4",)
        self.emit(MetadataProbed("A video", "Its description"))
        for stage in self.job.stages:
            self.emit(StageStarted(stage))
            if stage == JobStatus.DOWNLOADING:
                self.emit(DownloadProgress(50.0))
                self.emit(DownloadProgress(100.0))
        self.emit(ArtifactsUploaded(urls))
        self.emit(ExecutionSucceeded())

    def fail(self, message: str = "yt-dlp exited with code 1") -> None:
        self.emit(StageStarted(JobStatus.DOWNLOADING))
        self.emit(ExecutionFailed(message))


class FakeExecutor(JobExecutor):
    """Records every start and hands out FakeHandles."""

    def __init__(
        self,
        auto_complete: bool = False,
        honor_termination: bool = True,
        failing_urls: Iterable[str] = (),
        unstartable_urls: Iterable[str] = (),
    ):
        self.auto_complete = auto_complete
        self.honor_termination = honor_termination
        self.failing_urls = set(failing_urls)
        self.unstartable_urls = set(unstartable_urls)
        self.started: list[str] = []
        self.handles: dict[str, FakeHandle] = {}

    def start(self, job: Job) -> FakeHandle:
        if job.url in self.unstartable_urls:
            raise RuntimeError("could not spawn yt-dlp")

        handle = FakeHandle(job, self.honor_termination)
        self.started.append(job.id)
        self.handles[job.id] = handle
        if job.url in self.failing_urls:
            handle.fail()
        elif self.auto_complete:
            handle.complete()
        return handle


class FakeReleaseFeed(ReleaseFeed):
    """Serves a fixed release whose binary is a given shell script."""

    def __init__(self, version: str, binary_script: Optional[str] = None):
        self.release = ReleaseDescriptor(tag_name=version)
        self.binary_script = binary_script
        self.fetches = 0
        self.downloads = 0

    async def fetch_latest(self) -> ReleaseDescriptor:
        self.fetches += 1
        return self.release

    async def download_binary(
        self, release: ReleaseDescriptor, destination: str
    ) -> None:
        self.downloads += 1
        Path(destination).write_text(self.binary_script or "")


def fake_binary_script(version: str, fail_when_named: Optional[str] = None) -> str:
    """
    A shell script that prints `version` like `yt-dlp --version` does. With
    `fail_when_named`, it exits 1 whenever it is invoked under that file name.
    """
    lines = ["#!/bin/sh"]
    if fail_when_named:
        lines += [
            'case "$0" in',
            f'  */{fail_when_named}) echo "broken install" >&2; exit 1;;',
            "esac",
        ]
    lines.append(f"echo '{version}'")
    return "\n".join(lines) + "\n"


def write_executable(path: Path, script: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(script)
    os.chmod(path, 0o755)
    return path


async def _eventually(
    predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01
) -> None:
    """Polls `predicate` until it holds, failing the test after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition was not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry(max_finished_jobs=100)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
async def make_scheduler(registry: JobRegistry):
    """Builds started schedulers over the shared registry and stops them afterwards."""
    schedulers: list[Scheduler] = []

    async def _make(
        executor: JobExecutor, max_concurrent: int = 1, cancel_timeout: float = 1.0
    ) -> Scheduler:
        scheduler = Scheduler(
            registry,
            executor,
            max_concurrent=max_concurrent,
            cancel_timeout=cancel_timeout,
        )
        await scheduler.start()
        schedulers.append(scheduler)
        return scheduler

    yield _make

    for scheduler in schedulers:
        await scheduler.stop(cancel_active=True)


@pytest.fixture
def binary_paths(tmp_path: Path) -> dict[str, Path]:
    return {
        "live": tmp_path / "bin" / "yt-dlp",
        "backup": tmp_path / "yt-dlp-backup",
        "staging": tmp_path / "yt-dlp-new",
    }


@pytest.fixture
def service_config(tmp_path: Path, binary_paths: dict[str, Path]) -> ServiceConfig:
    return ServiceConfig(
        work_dir=str(tmp_path / "work"),
        ytdlp_path=str(binary_paths["live"]),
        binary_backup_path=str(binary_paths["backup"]),
        binary_staging_path=str(binary_paths["staging"]),
        update_max_retries=3,
        update_retry_interval=3600,
        probe_timeout=5,
    )
