"""Tests for the shared connection pool and the artifact uploader."""

import asyncio
from pathlib import Path

import pytest
from aiohttp import test_utils, web

from vidfetch.exceptions import ExecutionError
from vidfetch.media.downloader import (
    BinaryDownloader,
    HttpArtifactUploader,
    close_connection_pool,
    get_connection_pool,
)


class StorageStub:
    """Records PUT requests; the first `failures` requests answer 503."""

    def __init__(self):
        self.requests: list[dict] = []
        self.failures = 0
        self.url = ""

    async def handle_put(self, request: web.Request) -> web.Response:
        body = await request.read()
        if self.failures:
            self.failures -= 1
            return web.Response(status=503)
        self.requests.append(
            {
                "path": request.path,
                "content_length": request.headers.get("Content-Length"),
                "content_type": request.headers.get("Content-Type"),
                "body": body,
            }
        )
        return web.Response(status=200)


@pytest.fixture
async def storage():
    stub = StorageStub()
    app = web.Application()
    app.router.add_put("/{key:.*}", stub.handle_put)
    server = test_utils.TestServer(app)
    await server.start_server()
    stub.url = str(server.make_url("/"))
    yield stub
    await close_connection_pool()
    await server.close()


def _write_video(path: Path, size: int) -> bytes:
    data = bytes(i % 251 for i in range(size))
    path.write_bytes(data)
    return data


class TestArtifactUploader:
    """Streaming uploads to object storage."""

    async def test_upload_streams_whole_file(
        self, tmp_path: Path, storage: StorageStub
    ) -> None:
        video = tmp_path / "clip.mp4"
        data = _write_video(video, BinaryDownloader.CHUNK_SIZE * 2 + 17)
        uploader = HttpArtifactUploader(storage.url, "https://cdn.test", "videos")

        url = await uploader.upload_file(str(video), "job1")

        assert url == "https://cdn.test/videos/job1/clip.mp4"
        [request] = storage.requests
        assert request["path"] == "/videos/job1/clip.mp4"
        assert request["content_length"] == str(len(data))
        assert request["content_type"] == "video/mp4"
        assert request["body"] == data

    async def test_file_is_read_in_chunks(self, tmp_path: Path) -> None:
        video = tmp_path / "clip.webm"
        _write_video(video, BinaryDownloader.CHUNK_SIZE * 3 + 1)
        uploader = HttpArtifactUploader("http://s.test", "https://cdn.test", "videos")

        sizes = [len(chunk) async for chunk in uploader._read_chunks(str(video))]

        assert sizes == [BinaryDownloader.CHUNK_SIZE] * 3 + [1]

    async def test_retry_sends_the_file_again(
        self, tmp_path: Path, storage: StorageStub
    ) -> None:
        video = tmp_path / "clip.mp4"
        data = _write_video(video, BinaryDownloader.CHUNK_SIZE + 5)
        storage.failures = 1
        uploader = HttpArtifactUploader(
            storage.url, "https://cdn.test", "videos", base_delay=0
        )

        await uploader.upload_file(str(video), "job1")

        [request] = storage.requests
        assert request["body"] == data

    async def test_gives_up_after_max_attempts(
        self, tmp_path: Path, storage: StorageStub
    ) -> None:
        video = tmp_path / "clip.mp4"
        _write_video(video, 10)
        storage.failures = 5
        uploader = HttpArtifactUploader(
            storage.url, "https://cdn.test", "videos", max_attempts=2, base_delay=0
        )

        with pytest.raises(ExecutionError):
            await uploader.upload_file(str(video), "job1")
        assert storage.requests == []
        assert storage.failures == 3


class TestConnectionPool:
    """The shared aiohttp session."""

    async def test_pool_is_reused_until_closed(self) -> None:
        first = await get_connection_pool()
        assert await get_connection_pool() is first

        await close_connection_pool()

        assert first.closed
        second = await get_connection_pool()
        assert second is not first
        await close_connection_pool()

    def test_pool_works_on_successive_event_loops(self) -> None:
        async def use_pool():
            session = await get_connection_pool()
            assert not session.closed
            await close_connection_pool()
            return session

        assert asyncio.run(use_pool()) is not asyncio.run(use_pool())
