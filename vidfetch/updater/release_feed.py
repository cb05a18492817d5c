"""
Sources of new yt-dlp releases.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from vidfetch import __version__
from vidfetch.exceptions import ReleaseFeedError
from vidfetch.media.downloader import BinaryDownloader
from vidfetch.models.config import (
    DEFAULT_RELEASE_API_URL,
    DEFAULT_RELEASE_DOWNLOAD_URL,
)
from vidfetch.models.update import ReleaseDescriptor

log = logging.getLogger(__name__)

USER_AGENT = f"vidfetch/{__version__}"


class ReleaseFeed(ABC):
    """Publishes the latest release of the binary and serves its payload."""

    @abstractmethod
    async def fetch_latest(self) -> ReleaseDescriptor:
        """
        Raises:
            ReleaseFeedError: If the feed is unreachable or its answer malformed.
        """

    @abstractmethod
    async def download_binary(
        self, release: ReleaseDescriptor, destination: str
    ) -> None:
        """Writes the release's binary to `destination`."""


class GitHubReleaseFeed(ReleaseFeed):
    """Reads the latest release from the GitHub releases API."""

    def __init__(
        self,
        api_url: str = DEFAULT_RELEASE_API_URL,
        download_url: str = DEFAULT_RELEASE_DOWNLOAD_URL,
        asset_name: str = "yt-dlp",
        max_retries: int = 3,
        base_delay: float = 2.0,
    ):
        self.api_url = api_url
        self.download_url = download_url
        self.asset_name = asset_name
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._downloader = BinaryDownloader(
            max_attempts=max_retries,
            base_delay=base_delay,
            headers={"User-Agent": USER_AGENT},
        )

    async def fetch_latest(self) -> ReleaseDescriptor:
        """Fetches the latest release with retry logic."""
        timeout = aiohttp.ClientTimeout(total=45, connect=15)
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
        }
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            for attempt in range(1, self.max_retries + 1):
                try:
                    log.debug(
                        f"Attempt {attempt}/{self.max_retries} to fetch the latest"
                        " release..."
                    )
                    async with session.get(self.api_url) as response:
                        response.raise_for_status()
                        payload = await response.json()

                    release = ReleaseDescriptor.model_validate(payload)
                    log.debug(f"Latest release is {release.tag_name}.")
                    return release

                except PydanticValidationError as e:
                    raise ReleaseFeedError(
                        f"Release feed returned an unexpected payload: {e}"
                    ) from e
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    log.warning(f"Release fetch attempt {attempt} failed: {e}")
                    if attempt == self.max_retries:
                        raise ReleaseFeedError(
                            f"Failed to fetch the latest release after"
                            f" {self.max_retries} attempts: {e}"
                        ) from e
                    await asyncio.sleep(self.base_delay**attempt)

        raise ReleaseFeedError("Release fetching failed unexpectedly.")

    def resolve_download_url(self, release: ReleaseDescriptor) -> str:
        """Prefers the asset named like the binary, else the 'latest' download link."""
        asset = release.find_asset(self.asset_name)
        return asset.browser_download_url if asset else self.download_url

    async def download_binary(
        self, release: ReleaseDescriptor, destination: str
    ) -> None:
        url = self.resolve_download_url(release)
        log.debug(
            f"Downloading {release.tag_name} to '{os.path.basename(destination)}'."
        )
        try:
            size = await self._downloader.download_file(url, destination)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ReleaseFeedError(f"Failed to download {release.tag_name}: {e}") from e
        if size == 0:
            raise ReleaseFeedError(f"Downloaded binary for {release.tag_name} is empty.")
