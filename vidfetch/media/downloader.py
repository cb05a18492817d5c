"""
Handles the HTTP side of the media layer: streaming binaries to disk and
uploading finished artifacts to object storage.
"""

import asyncio
import logging
import mimetypes
import os
from typing import AsyncIterator, Iterable, Optional

import aiofiles
import aiohttp

from vidfetch.exceptions import ExecutionError
from vidfetch.utils.formatting import sanitize_url

log = logging.getLogger(__name__)

_connection_pool: aiohttp.ClientSession | None = None
_pool_lock: asyncio.Lock | None = None
_pool_loop: asyncio.AbstractEventLoop | None = None


def _get_pool_lock() -> asyncio.Lock:
    """
    Returns the pool lock for the running event loop. A pool created on another
    loop is discarded.
    """
    global _connection_pool, _pool_lock, _pool_loop
    loop = asyncio.get_running_loop()
    if _pool_lock is None or _pool_loop is not loop:
        _pool_lock = asyncio.Lock()
        _pool_loop = loop
        _connection_pool = None
    return _pool_lock


async def get_connection_pool(max_connections: int = 8) -> aiohttp.ClientSession:
    """
    Gets or creates the shared aiohttp ClientSession for transfers.

    One pool exists per event loop; `close_connection_pool` must be called on
    shutdown.
    """
    global _connection_pool
    async with _get_pool_lock():
        if _connection_pool and not _connection_pool.closed:
            return _connection_pool

        connector = aiohttp.TCPConnector(
            limit=max_connections * 2,
            limit_per_host=max_connections,
            ttl_dns_cache=600,
            keepalive_timeout=30,
            enable_cleanup_closed=True,
        )
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90)
        _connection_pool = aiohttp.ClientSession(connector=connector, timeout=timeout)
        log.debug(f"Created transfer pool with limit_per_host={max_connections}")

    return _connection_pool


async def close_connection_pool() -> None:
    """Closes the shared connection pool."""
    global _connection_pool
    async with _get_pool_lock():
        if _connection_pool and not _connection_pool.closed:
            await _connection_pool.close()
            _connection_pool = None
            log.debug("Shared transfer connection pool closed.")


class BinaryDownloader:
    """Streams a file to disk with retries and exponential backoff."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.5,
        headers: Optional[dict[str, str]] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.headers = headers or {}

    async def download_file(self, url: str, destination_path: str) -> int:
        """
        Downloads `url` to `destination_path`, following redirects.

        Returns:
            The number of bytes written.

        Raises:
            aiohttp.ClientError: If every attempt failed.
        """
        last_exception: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                session = await get_connection_pool()
                async with session.get(
                    url, allow_redirects=True, headers=self.headers
                ) as response:
                    response.raise_for_status()
                    bytes_downloaded = 0
                    async with aiofiles.open(destination_path, "wb") as f:
                        async for chunk in response.content.iter_chunked(
                            self.CHUNK_SIZE
                        ):
                            await f.write(chunk)
                            bytes_downloaded += len(chunk)

                log.debug(
                    f"Downloaded {bytes_downloaded} bytes to "
                    f"'{os.path.basename(destination_path)}'."
                )
                return bytes_downloaded
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                log.debug(
                    f"Download attempt {attempt}/{self.max_attempts} for "
                    f"'{sanitize_url(url)}' failed: {e}. Retrying..."
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        raise last_exception or aiohttp.ClientError(f"Could not download '{url}'")


class HttpArtifactUploader:
    """
    Uploads files to an S3-compatible bucket with plain HTTP PUT requests and
    returns their public URLs.
    """

    def __init__(
        self,
        storage_url: str,
        public_url: str,
        bucket: str,
        max_attempts: int = 3,
        base_delay: float = 1.5,
    ):
        self.storage_url = storage_url.rstrip("/")
        self.public_url = public_url.rstrip("/")
        self.bucket = bucket
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def object_key(self, prefix: str, file_name: str) -> str:
        return f"{self.bucket}/{prefix}/{file_name}"

    def public_url_for(self, prefix: str, file_name: str) -> str:
        return f"{self.public_url}/{self.object_key(prefix, file_name)}"

    async def _read_chunks(self, file_path: str) -> AsyncIterator[bytes]:
        async with aiofiles.open(file_path, "rb") as f:
            while chunk := await f.read(BinaryDownloader.CHUNK_SIZE):
                yield chunk

    async def upload_file(self, file_path: str, prefix: str) -> str:
        """
        Streams one file to `<bucket>/<prefix>/` and returns its public URL.

        Raises:
            ExecutionError: If the upload failed after every attempt.
        """
        file_name = os.path.basename(file_path)
        target = f"{self.storage_url}/{self.object_key(prefix, file_name)}"
        headers = {
            "Content-Type": mimetypes.guess_type(file_name)[0]
            or "application/octet-stream",
            "Content-Length": str(await asyncio.to_thread(os.path.getsize, file_path)),
        }

        last_exception: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                session = await get_connection_pool()
                async with session.put(
                    target, data=self._read_chunks(file_path), headers=headers
                ) as response:
                    response.raise_for_status()
                log.debug(
                    f"Uploaded '{file_name}' ({headers['Content-Length']} bytes)"
                    f" to '{target}'."
                )
                return self.public_url_for(prefix, file_name)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                log.debug(
                    f"Upload attempt {attempt}/{self.max_attempts} for "
                    f"'{file_name}' failed: {e}. Retrying..."
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        raise ExecutionError(f"Failed to upload '{file_name}': {last_exception}")

    async def upload_files(self, file_paths: Iterable[str], prefix: str) -> list[str]:
        """Uploads files one after another, preserving their order."""
        return [await self.upload_file(path, prefix) for path in file_paths]
