"""
Keeps the external yt-dlp binary current without disturbing running jobs.
"""

from .binary_manager import BinaryUpdateManager
from .release_feed import GitHubReleaseFeed, ReleaseFeed
from .versioning import compare_versions, normalize_version

__all__ = [
    "BinaryUpdateManager",
    "GitHubReleaseFeed",
    "ReleaseFeed",
    "compare_versions",
    "normalize_version",
]
