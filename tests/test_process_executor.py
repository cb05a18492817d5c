"""Tests for the yt-dlp/ffmpeg process pipeline."""

import os
from pathlib import Path

import pytest

from vidfetch.exceptions import ExecutionError
from vidfetch.media.downloader import HttpArtifactUploader
from vidfetch.media.execution import (
    ArtifactsUploaded,
    DownloadProgress,
    ExecutionFailed,
    ExecutionSucceeded,
    ExecutionTerminated,
    MetadataProbed,
    StageStarted,
)
from vidfetch.media.process_executor import (
    ProcessExecution,
    ProcessExecutor,
    build_convert_args,
    build_download_args,
    list_video_files,
    parse_probe_output,
    parse_progress,
)
from vidfetch.models.config import ServiceConfig
from vidfetch.models.job import Job, JobStatus, TimeRange

from conftest import write_executable

FAKE_YTDLP = """#!/bin/sh
for arg in "$@"; do
  if [ "$arg" = "--dump-json" ]; then
    echo '{"title": "Clip", "playlist": null, "description": "Desc"}'
    exit 0
  fi
done
echo "[youtube] abc: Downloading webpage"
echo "[download]   0.0% of 10.00MiB at 1.00MiB/s ETA 00:10"
echo "[download]  50.0% of 10.00MiB at 1.00MiB/s ETA 00:05"
echo "[download] 100% of 10.00MiB in 00:10"
echo data > video.webm
"""

FAILING_YTDLP = """#!/bin/sh
for arg in "$@"; do
  if [ "$arg" = "--dump-json" ]; then
    echo '{"title": "Clip"}'
    exit 0
  fi
done
echo "ERROR: Unsupported URL"
exit 1
"""

SLOW_YTDLP = """#!/bin/sh
for arg in "$@"; do
  if [ "$arg" = "--dump-json" ]; then
    echo '{"title": "Clip"}'
    exit 0
  fi
done
exec sleep 30
"""

FAKE_FFMPEG = """#!/bin/sh
for last; do :; done
cp "$3" "$last"
"""


class RecordingUploader(HttpArtifactUploader):
    """Uploader that records files instead of sending them."""

    def __init__(self):
        super().__init__("http://storage.test", "https://cdn.test", "videos")
        self.uploaded: list[str] = []

    async def upload_file(self, file_path: str, prefix: str) -> str:
        self.uploaded.append(os.path.basename(file_path))
        return self.public_url_for(prefix, os.path.basename(file_path))


async def _collect(handle) -> list:
    return [event async for event in handle.events()]


@pytest.fixture
def executor_config(tmp_path: Path) -> ServiceConfig:
    return ServiceConfig(
        work_dir=str(tmp_path / "work"),
        ytdlp_path=str(write_executable(tmp_path / "bin" / "yt-dlp", FAKE_YTDLP)),
        ffmpeg_path=str(write_executable(tmp_path / "bin" / "ffmpeg", FAKE_FFMPEG)),
        binary_backup_path=str(tmp_path / "backup"),
        binary_staging_path=str(tmp_path / "staging"),
    )


class TestArguments:
    """Command line construction."""

    def test_download_without_range(self) -> None:
        args = build_download_args("/usr/bin/yt-dlp", "https://e.com/v")
        assert args[0] == "/usr/bin/yt-dlp"
        assert args[-1] == "https://e.com/v"
        assert "--download-sections" not in args

    def test_download_with_range(self) -> None:
        time_range = TimeRange(start="00:01:00", end="00:02:00")
        args = build_download_args("/usr/bin/yt-dlp", "https://e.com/v", time_range)

        index = args.index("--download-sections")
        assert args[index + 1] == "*00:01:00-00:02:00"
        assert "--force-keyframes-at-cuts" in args
        assert args[-1] == "https://e.com/v"

    def test_convert(self) -> None:
        args = build_convert_args("/usr/bin/ffmpeg", "in.webm", "render/part0.mp4")
        assert args[args.index("-i") + 1] == "in.webm"
        assert args[args.index("-c:v") + 1] == "libx264"
        assert args[args.index("-crf") + 1] == "30"
        assert args[args.index("-b:a") + 1] == "128k"
        assert args[-1] == "render/part0.mp4"


class TestParsing:
    """Output parsing helpers."""

    @pytest.mark.parametrize(
        "line, expected",
        [
            ("[download]  42.5% of 10.00MiB at 1.00MiB/s ETA 00:05", 42.5),
            ("[download] 100% of 10.00MiB in 00:10", 100.0),
            ("[download]   0.0% of ~5.00MiB", 0.0),
            ("[download] Destination: video.webm", None),
            ("[youtube] abc: Downloading webpage", None),
        ],
    )
    def test_parse_progress(self, line: str, expected) -> None:
        assert parse_progress(line) == expected

    def test_probe_prefers_playlist_title(self) -> None:
        stdout = (
            '{"title": "Entry 1", "playlist": "My List", "description": "d"}\n'
            '{"title": "Entry 2", "playlist": "My List"}\n'
        )
        assert parse_probe_output(stdout) == ("My List", "d")

    def test_probe_falls_back_to_title(self) -> None:
        assert parse_probe_output('{"title": "Solo"}\n') == ("Solo", None)

    def test_probe_with_no_output(self) -> None:
        assert parse_probe_output("\n") == (None, None)

    def test_probe_with_garbage_raises(self) -> None:
        with pytest.raises(ExecutionError):
            parse_probe_output("not json\n")

    def test_list_video_files_filters_extensions(self, tmp_path: Path) -> None:
        for name in ("b.mp4", "a.webm", "c.mkv", "download.log", "x.part"):
            (tmp_path / name).write_text("x")
        (tmp_path / "render").mkdir()

        names = [os.path.basename(p) for p in list_video_files(str(tmp_path))]

        assert names == ["a.webm", "b.mp4", "c.mkv"]
        assert list_video_files(str(tmp_path / "missing")) == []


class TestPipeline:
    """End-to-end runs against fake executables."""

    async def test_successful_download_and_upload(
        self, executor_config: ServiceConfig
    ) -> None:
        uploader = RecordingUploader()
        job = Job(url="https://example.com/watch?v=abc")

        events = await _collect(ProcessExecutor(executor_config, uploader).start(job))

        assert events[0] == MetadataProbed("Clip", "Desc")
        assert StageStarted(JobStatus.DOWNLOADING) in events
        assert StageStarted(JobStatus.CONVERTING) not in events
        assert [e.percent for e in events if isinstance(e, DownloadProgress)] == [
            0.0,
            50.0,
            100.0,
        ]
        assert events[-2] == ArtifactsUploaded(
            (f"https://cdn.test/videos/{job.id}/video.webm",)
        )
        assert isinstance(events[-1], ExecutionSucceeded)
        assert uploader.uploaded == ["video.webm"]
        assert not os.path.exists(os.path.join(executor_config.work_dir, job.id))

    async def test_time_range_converts_before_upload(
        self, executor_config: ServiceConfig
    ) -> None:
        uploader = RecordingUploader()
        job = Job(
            url="https://example.com/v",
            time_range=TimeRange(start="00:00:05", end="00:00:10"),
        )

        events = await _collect(ProcessExecutor(executor_config, uploader).start(job))

        stages = [e.stage for e in events if isinstance(e, StageStarted)]
        assert stages == [
            JobStatus.DOWNLOADING,
            JobStatus.CONVERTING,
            JobStatus.UPLOADING,
        ]
        assert uploader.uploaded == ["part0.mp4"]
        assert isinstance(events[-1], ExecutionSucceeded)

    async def test_failing_download_reports_failure(
        self, tmp_path: Path, executor_config: ServiceConfig
    ) -> None:
        write_executable(Path(executor_config.ytdlp_path), FAILING_YTDLP)
        uploader = RecordingUploader()
        job = Job(url="https://example.com/v")

        events = await _collect(ProcessExecutor(executor_config, uploader).start(job))

        assert isinstance(events[-1], ExecutionFailed)
        assert "exited with code 1" in events[-1].message
        assert "Unsupported URL" in events[-1].message
        assert uploader.uploaded == []

    async def test_missing_binary_reports_failure(
        self, executor_config: ServiceConfig
    ) -> None:
        config = executor_config.model_copy(update={"ytdlp_path": "/nonexistent/yt"})
        events = await _collect(
            ProcessExecutor(config, RecordingUploader()).start(Job(url="https://e.com"))
        )

        assert isinstance(events[-1], ExecutionFailed)
        assert "Could not start" in events[-1].message

    async def test_termination_request_stops_process(
        self, eventually, executor_config: ServiceConfig
    ) -> None:
        write_executable(Path(executor_config.ytdlp_path), SLOW_YTDLP)
        job = Job(url="https://example.com/v")
        handle = ProcessExecutor(executor_config, RecordingUploader()).start(job)

        await eventually(
            lambda: handle.step == "download"
            and handle._process is not None
            and handle._process.returncode is None,
            timeout=5.0,
        )
        handle.request_termination()
        events = await _collect(handle)

        assert events[-1] == ExecutionTerminated()


class TestProcessLog:
    """Per-process log files."""

    @pytest.mark.parametrize("merge_stderr", [True, False])
    async def test_log_holds_command_and_output(
        self, tmp_path: Path, executor_config: ServiceConfig, merge_stderr: bool
    ) -> None:
        noisy = write_executable(
            tmp_path / "bin" / "noisy", "#!/bin/sh\necho err >&2\nsleep 0.1\necho out\n"
        )
        execution = ProcessExecution(
            Job(url="https://example.com/v"), executor_config, RecordingUploader()
        )
        os.makedirs(execution.job_dir)
        seen: list[str] = []

        async def collect(line: str) -> None:
            seen.append(line.strip())

        await execution._run_process(
            [str(noisy), "https://example.com/v?token=1"],
            "noisy.log",
            on_line=collect,
            merge_stderr=merge_stderr,
        )

        log_lines = (Path(execution.job_dir) / "noisy.log").read_text().splitlines()
        assert log_lines[0] == f"$ {noisy} https://example.com/v?token=1"
        if merge_stderr:
            assert seen == ["err", "out"]
            assert log_lines[1:] == ["err", "out"]
        else:
            assert seen == ["out"]
            assert log_lines[1:] == ["err"]
