"""Tests for JobService request validation and snapshots."""

import pytest

from vidfetch.core.job_service import JobService
from vidfetch.core.registry import JobRegistry
from vidfetch.exceptions import InvalidStateError, JobNotFoundError, ValidationError
from vidfetch.models.job import CreateJobInput, JobStatus, JobType


@pytest.fixture
def service(registry: JobRegistry) -> JobService:
    return JobService(registry)


class TestCreate:
    """Creating video download jobs."""

    async def test_creates_pending_job(self, service: JobService) -> None:
        snapshot = await service.create_video_download_job(
            {"url": "https://example.com/watch?v=abc"}
        )

        assert snapshot.status == JobStatus.PENDING
        assert snapshot.type == JobType.VIDEO
        assert service.queue_snapshot() == [snapshot.id]
        assert snapshot.to_response() == {
            "id": snapshot.id,
            "url": "https://example.com/watch?v=abc",
            "type": "video",
            "status": "pending",
        }

    async def test_time_range_is_kept(self, service: JobService) -> None:
        snapshot = await service.create_video_download_job(
            {
                "url": "https://example.com/v",
                "timeRange": {"start": "00:01:00", "end": "00:02:30"},
            }
        )

        assert snapshot.to_response()["timeRange"] == {
            "start": "00:01:00",
            "end": "00:02:30",
        }

    async def test_accepts_validated_input(self, service: JobService) -> None:
        request = CreateJobInput(url="https://example.com/v")
        snapshot = await service.create_video_download_job(request)
        assert service.get_job(snapshot.id).url == "https://example.com/v"

    async def test_ids_are_unique(self, service: JobService) -> None:
        ids = {
            (await service.create_video_download_job({"url": "https://e.com/v"})).id
            for _ in range(20)
        }
        assert len(ids) == 20

    @pytest.mark.parametrize(
        "payload",
        [
            {"url": "not a url"},
            {"url": "ftp://example.com/file"},
            {"url": "https://"},
            {},
            {
                "url": "https://example.com/v",
                "timeRange": {"start": "00:02:00", "end": "00:01:00"},
            },
            {
                "url": "https://example.com/v",
                "timeRange": {"start": "00:01:00", "end": "00:01:00"},
            },
            {
                "url": "https://example.com/v",
                "timeRange": {"start": "1:00", "end": "00:01:00"},
            },
            {
                "url": "https://example.com/v",
                "timeRange": {"start": "00:00:00", "end": "00:61:00"},
            },
        ],
    )
    async def test_invalid_input_is_rejected(
        self, service: JobService, payload: dict
    ) -> None:
        with pytest.raises(ValidationError):
            await service.create_video_download_job(payload)
        assert service.list_jobs() == []


class TestLookupAndCancel:
    """Reading and cancelling jobs."""

    async def test_get_unknown_job(self, service: JobService) -> None:
        with pytest.raises(JobNotFoundError):
            service.get_job("nope")

    async def test_cancel_pending_job(self, service: JobService) -> None:
        snapshot = await service.create_video_download_job({"url": "https://e.com/v"})

        cancelled = await service.cancel_job(snapshot.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert service.queue_snapshot() == []
        with pytest.raises(InvalidStateError):
            await service.cancel_job(snapshot.id)

    async def test_list_jobs_returns_snapshots(self, service: JobService) -> None:
        first = await service.create_video_download_job({"url": "https://e.com/1"})
        second = await service.create_video_download_job({"url": "https://e.com/2"})

        assert [s.id for s in service.list_jobs()] == [first.id, second.id]
