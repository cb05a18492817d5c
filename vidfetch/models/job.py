"""
Data structures describing download jobs: status and type enums, the
validated creation input, the internal job record and its public snapshot.
"""

import asyncio
import re
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from vidfetch.media.execution import ExecutionHandle

_TIMESTAMP_REGEX = re.compile(r"^(\d{2}):([0-5]\d):([0-5]\d)$")


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class JobType(str, Enum):
    """Kinds of job the engine knows how to run."""

    VIDEO = "video"

    def pipeline(self, has_time_range: bool) -> tuple[JobStatus, ...]:
        """Returns the ordered working stages a job of this type passes through."""
        return _PIPELINES[self](has_time_range)


def _video_pipeline(has_time_range: bool) -> tuple[JobStatus, ...]:
    if has_time_range:
        return (JobStatus.DOWNLOADING, JobStatus.CONVERTING, JobStatus.UPLOADING)
    return (JobStatus.DOWNLOADING, JobStatus.UPLOADING)


_PIPELINES = {
    JobType.VIDEO: _video_pipeline,
}


def timestamp_to_seconds(value: str) -> int:
    """Converts an 'HH:MM:SS' timestamp into a number of seconds."""
    match = _TIMESTAMP_REGEX.match(value)
    if not match:
        raise ValueError(f"Timestamp must use the HH:MM:SS format, got '{value}'.")
    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


class TimeRange(BaseModel):
    """A section of the source media to keep, both ends as 'HH:MM:SS'."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_timestamp(cls, v: str) -> str:
        timestamp_to_seconds(v)
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "TimeRange":
        if timestamp_to_seconds(self.end) <= timestamp_to_seconds(self.start):
            raise ValueError("Time range end must be after its start.")
        return self


class CreateJobInput(BaseModel):
    """Validated request to create a video download job."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    url: str
    time_range: Optional[TimeRange] = Field(default=None, alias="timeRange")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Accepts only absolute http(s) URLs with a host."""
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"'{v}' is not a valid http(s) URL.")
        return v


class JobSnapshot(BaseModel):
    """Public, read-only view of a job as returned to callers."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    url: str
    type: JobType
    status: JobStatus
    title: Optional[str] = None
    description: Optional[str] = None
    time_range: Optional[TimeRange] = Field(default=None, alias="timeRange")
    download_urls: Optional[list[str]] = Field(default=None, alias="downloadUrls")
    error: Optional[str] = None

    def to_response(self) -> dict:
        """Serialises the snapshot using camelCase keys, dropping unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def new_job_id() -> str:
    return secrets.token_urlsafe(12)


@dataclass
class Job:
    """The registry's authoritative record for one job."""

    url: str
    type: JobType = JobType.VIDEO
    time_range: Optional[TimeRange] = None
    id: str = field(default_factory=new_job_id)
    status: JobStatus = JobStatus.PENDING
    title: Optional[str] = None
    description: Optional[str] = None
    download_urls: list[str] = field(default_factory=list)
    error: Optional[str] = None
    progress: float = 0.0
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    # Owned by the scheduler while the job runs
    handle: Optional["ExecutionHandle"] = field(
        default=None, repr=False, compare=False
    )
    cancel_requested: asyncio.Event = field(
        default_factory=asyncio.Event, repr=False, compare=False
    )

    @property
    def stages(self) -> tuple[JobStatus, ...]:
        return self.type.pipeline(self.time_range is not None)

    def can_enter(self, stage: JobStatus) -> bool:
        """
        Whether the job may move to a working stage. Only the next stage of the
        type's pipeline is reachable; re-entering the current stage is allowed.
        """
        stages = self.stages
        if stage not in stages:
            return False
        if self.status == JobStatus.PENDING:
            return stage == stages[0]
        if self.status not in stages:
            return False
        return stages.index(stage) - stages.index(self.status) in (0, 1)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            url=self.url,
            type=self.type,
            status=self.status,
            title=self.title,
            description=self.description,
            time_range=self.time_range,
            download_urls=list(self.download_urls) or None,
            error=self.error,
        )
