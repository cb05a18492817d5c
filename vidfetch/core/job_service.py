"""
Public entry points for creating, inspecting and cancelling download jobs.
"""

import logging
from typing import Any, Mapping, Union

from pydantic import ValidationError as PydanticValidationError

from vidfetch.exceptions import ValidationError
from vidfetch.models.job import CreateJobInput, Job, JobSnapshot, JobType

from .registry import JobRegistry

log = logging.getLogger(__name__)


def _describe_validation_error(error: PydanticValidationError) -> str:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "input"
        messages.append(f"{location}: {detail['msg']}")
    return "; ".join(messages)


class JobService:
    """Validates requests and hands jobs to the registry for scheduling."""

    def __init__(self, registry: JobRegistry):
        self.registry = registry

    async def create_video_download_job(
        self, payload: Union[CreateJobInput, Mapping[str, Any]]
    ) -> JobSnapshot:
        """
        Creates a pending video download job and queues it.

        Args:
            payload: `{"url": ..., "timeRange": {"start": ..., "end": ...}}` or an
                already validated CreateJobInput.

        Raises:
            ValidationError: If the URL is malformed or the time range is invalid.
        """
        if isinstance(payload, CreateJobInput):
            request = payload
        else:
            try:
                request = CreateJobInput.model_validate(dict(payload))
            except PydanticValidationError as e:
                raise ValidationError(_describe_validation_error(e)) from e

        job = Job(url=request.url, type=JobType.VIDEO, time_range=request.time_range)
        await self.registry.register(job)
        return job.snapshot()

    def get_job(self, job_id: str) -> JobSnapshot:
        """Raises JobNotFoundError if the job is unknown."""
        return self.registry.get(job_id).snapshot()

    async def cancel_job(self, job_id: str) -> JobSnapshot:
        """
        Cancels a queued or running job and returns its updated snapshot.

        Raises:
            JobNotFoundError: If the job is unknown.
            InvalidStateError: If the job already finished.
        """
        job = await self.registry.cancel(job_id)
        return job.snapshot()

    def list_jobs(self) -> list[JobSnapshot]:
        return [job.snapshot() for job in self.registry.jobs()]

    def queue_snapshot(self) -> list[str]:
        return self.registry.queue_snapshot()
