"""
Media Processing Layer.

This package runs jobs against the outside world: the execution contract the
scheduler consumes, the yt-dlp/ffmpeg process pipeline, and HTTP transfers.
"""

from .downloader import BinaryDownloader, HttpArtifactUploader
from .execution import ExecutionHandle, JobExecutor
from .process_executor import ProcessExecutor

__all__ = [
    "BinaryDownloader",
    "ExecutionHandle",
    "HttpArtifactUploader",
    "JobExecutor",
    "ProcessExecutor",
]
