"""
Runs video jobs as external processes: `yt-dlp` to fetch, `ffmpeg` to re-encode
clipped downloads, and an HTTP upload of the results to object storage.
"""

import asyncio
import json
import logging
import os
import re
import shutil
from typing import Awaitable, Callable, Optional

import aiofiles

from vidfetch.exceptions import ExecutionError
from vidfetch.models.config import ServiceConfig
from vidfetch.models.job import Job, JobStatus, TimeRange
from vidfetch.utils.formatting import sanitize_url

from .downloader import HttpArtifactUploader
from .execution import (
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

log = logging.getLogger(__name__)

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm")
RENDER_DIR = "render"
# --dump-json prints a whole metadata document on a single line.
_STREAM_LIMIT = 16 * 1024 * 1024

_PROGRESS_REGEX = re.compile(r"^\[download\]\s+(\d{1,3}(?:\.\d+)?)%")


def build_probe_args(ytdlp_path: str, url: str) -> list[str]:
    return [ytdlp_path, "--dump-json", "--no-warnings", url]


def build_download_args(
    ytdlp_path: str, url: str, time_range: Optional[TimeRange] = None
) -> list[str]:
    """Builds the yt-dlp command line, clipping to `time_range` when given."""
    args = [ytdlp_path, "--newline"]
    if time_range:
        args += [
            "--download-sections",
            f"*{time_range.start}-{time_range.end}",
            "--force-keyframes-at-cuts",
        ]
    args.append(url)
    return args


def build_convert_args(ffmpeg_path: str, source: str, destination: str) -> list[str]:
    return [
        ffmpeg_path,
        "-y",
        "-i",
        source,
        "-c:v",
        "libx264",
        "-crf",
        "30",
        "-preset",
        "medium",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        destination,
    ]


def parse_progress(line: str) -> Optional[float]:
    """Extracts the percentage from a yt-dlp `[download]  42.0% of ...` line."""
    match = _PROGRESS_REGEX.match(line.strip())
    if not match:
        return None
    return min(float(match.group(1)), 100.0)


def parse_probe_output(stdout: str) -> tuple[Optional[str], Optional[str]]:
    """
    Reads title and description from `yt-dlp --dump-json` output.

    Playlists print one JSON document per entry; only the first is used, and its
    playlist title wins over the entry title.
    """
    first_line = next((line for line in stdout.splitlines() if line.strip()), None)
    if first_line is None:
        return None, None
    try:
        info = json.loads(first_line)
    except json.JSONDecodeError as e:
        raise ExecutionError(f"Could not parse video metadata: {e}") from e
    if not isinstance(info, dict):
        return None, None
    return info.get("playlist") or info.get("title"), info.get("description")


def list_video_files(directory: str) -> list[str]:
    """Returns the video files directly inside `directory`, sorted by name."""
    if not os.path.isdir(directory):
        return []
    return [
        os.path.join(directory, name)
        for name in sorted(os.listdir(directory))
        if name.endswith(VIDEO_EXTENSIONS)
        and os.path.isfile(os.path.join(directory, name))
    ]


class _TerminationRequested(Exception):
    pass


class ProcessExecution(ExecutionHandle):
    """One job's pipeline, running as a background task."""

    def __init__(self, job: Job, config: ServiceConfig, uploader: HttpArtifactUploader):
        super().__init__(job.id)
        self.job = job
        self.config = config
        self.uploader = uploader
        self.job_dir = os.path.join(config.work_dir, job.id)

        self._process: Optional[asyncio.subprocess.Process] = None
        self._termination_requested = False
        self._task: Optional[asyncio.Task] = None
        self.step: Optional[str] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def request_termination(self) -> None:
        self._termination_requested = True
        if self._process and self._process.returncode is None:
            log.debug(f"Sending SIGTERM to process of job '{self.job_id}'.")
            self._process.terminate()

    def kill(self) -> None:
        self._termination_requested = True
        if self._process and self._process.returncode is None:
            log.debug(f"Killing process of job '{self.job_id}'.")
            self._process.kill()
        if self._task and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        outcome = ExecutionFailed("Execution did not complete")
        try:
            await self._pipeline()
            outcome = ExecutionSucceeded()
        except _TerminationRequested:
            outcome = ExecutionTerminated()
        except asyncio.CancelledError:
            outcome = ExecutionTerminated(forced=True)
            raise
        except Exception as e:
            log.debug(f"Job '{self.job_id}' failed: {e}")
            outcome = ExecutionFailed(str(e) or type(e).__name__)
        finally:
            await asyncio.to_thread(shutil.rmtree, self.job_dir, True)
            self.emit(outcome)

    def _check_terminated(self) -> None:
        if self._termination_requested:
            raise _TerminationRequested()

    async def _pipeline(self) -> None:
        await asyncio.to_thread(os.makedirs, self.job_dir, exist_ok=True)
        stages = self.job.stages

        self._check_terminated()
        title, description = await self._probe()
        self.emit(MetadataProbed(title, description))

        self._check_terminated()
        self.emit(StageStarted(JobStatus.DOWNLOADING))
        await self._download()
        files = await asyncio.to_thread(list_video_files, self.job_dir)
        if not files:
            raise ExecutionError("No video files found")
        log.debug(f"Job '{self.job_id}' downloaded {len(files)} file(s).")

        if JobStatus.CONVERTING in stages:
            self._check_terminated()
            self.emit(StageStarted(JobStatus.CONVERTING))
            files = await self._convert(files)

        self._check_terminated()
        self.emit(StageStarted(JobStatus.UPLOADING))
        self.step = "upload"
        urls = await self.uploader.upload_files(files, self.job_id)
        self.emit(ArtifactsUploaded(tuple(urls)))

    async def _probe(self) -> tuple[Optional[str], Optional[str]]:
        self.step = "probe"
        args = build_probe_args(self.config.ytdlp_path, self.job.url)
        output: list[str] = []

        async def collect(line: str) -> None:
            output.append(line)

        await self._run_process(args, "probe.log", collect, merge_stderr=False)
        return parse_probe_output("".join(output))

    async def _download(self) -> None:
        self.step = "download"
        args = build_download_args(
            self.config.ytdlp_path, self.job.url, self.job.time_range
        )

        async def on_line(line: str) -> None:
            percent = parse_progress(line)
            if percent is not None:
                self.emit(DownloadProgress(percent))

        await self._run_process(args, "download.log", on_line)

    async def _convert(self, files: list[str]) -> list[str]:
        self.step = "convert"
        render_dir = os.path.join(self.job_dir, RENDER_DIR)
        await asyncio.to_thread(os.makedirs, render_dir, exist_ok=True)

        rendered = []
        for index, source in enumerate(files):
            self._check_terminated()
            destination = os.path.join(render_dir, f"part{index}.mp4")
            args = build_convert_args(self.config.ffmpeg_path, source, destination)
            await self._run_process(args, "render.log")
            rendered.append(destination)
        return rendered

    async def _run_process(
        self,
        args: list[str],
        log_name: str,
        on_line: Optional[Callable[[str], Awaitable[None]]] = None,
        merge_stderr: bool = True,
    ) -> None:
        """
        Runs one process in the job directory, appending its output to
        `log_name` and feeding stdout lines to `on_line`.

        Raises:
            _TerminationRequested: If termination was requested meanwhile.
            ExecutionError: If the process could not start or exited non-zero.
        """
        log_path = os.path.join(self.job_dir, log_name)
        display = " ".join(args[:-1] + [sanitize_url(args[-1])])
        log.debug(f"[{self.job_id}] $ {display}")

        async with aiofiles.open(log_path, "a", encoding="utf-8") as output_log:
            await output_log.write(f"$ {' '.join(args)}\n")
            await output_log.flush()
            stderr_log = (
                None if merge_stderr else await asyncio.to_thread(open, log_path, "ab")
            )
            try:
                try:
                    self._process = await asyncio.create_subprocess_exec(
                        *args,
                        cwd=self.job_dir,
                        limit=_STREAM_LIMIT,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=(
                            asyncio.subprocess.STDOUT if merge_stderr else stderr_log
                        ),
                    )
                except OSError as e:
                    raise ExecutionError(f"Could not start '{args[0]}': {e}") from e

                # A termination request may have arrived before the process existed.
                if self._termination_requested:
                    self._process.terminate()

                tail: list[str] = []
                async for raw in self._process.stdout:
                    line = raw.decode("utf-8", errors="replace")
                    if merge_stderr:
                        await output_log.write(line)
                    tail = (tail + [line.strip()])[-5:]
                    if on_line:
                        await on_line(line)
                returncode = await self._process.wait()
            finally:
                if stderr_log is not None:
                    await asyncio.to_thread(stderr_log.close)

        self._check_terminated()
        if returncode != 0:
            detail = next((t for t in reversed(tail) if t), "") if merge_stderr else ""
            raise ExecutionError(
                f"{os.path.basename(args[0])} exited with code {returncode}"
                + (f": {detail}" if detail else "")
            )


class ProcessExecutor(JobExecutor):
    """Starts a `ProcessExecution` for every job the scheduler dispatches."""

    def __init__(
        self, config: ServiceConfig, uploader: Optional[HttpArtifactUploader] = None
    ):
        self.config = config
        self.uploader = uploader or HttpArtifactUploader(
            config.storage_url, config.public_url, config.bucket
        )

    def start(self, job: Job) -> ProcessExecution:
        execution = ProcessExecution(job, self.config, self.uploader)
        execution.start()
        return execution
