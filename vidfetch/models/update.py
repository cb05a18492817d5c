"""
Pydantic models exchanged by the binary update manager and its release feed.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReleaseAsset(BaseModel):
    """One downloadable file attached to a release."""

    name: str
    browser_download_url: str
    size: int = 0


class ReleaseDescriptor(BaseModel):
    """The latest release as published by the release feed."""

    model_config = ConfigDict(extra="ignore")

    tag_name: str
    published_at: Optional[datetime] = None
    assets: list[ReleaseAsset] = Field(default_factory=list)

    @property
    def version(self) -> str:
        """The release tag without a leading 'v'."""
        return self.tag_name[1:] if self.tag_name.startswith("v") else self.tag_name

    def find_asset(self, name: str) -> Optional[ReleaseAsset]:
        return next((a for a in self.assets if a.name == name), None)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_response(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class UpdateStatus(_CamelModel):
    """Progress bookkeeping for the update manager."""

    is_updating: bool = Field(default=False, alias="isUpdating")
    last_check: Optional[datetime] = Field(default=None, alias="lastCheck")
    last_attempt: Optional[datetime] = Field(default=None, alias="lastAttempt")
    retry_count: int = Field(default=0, alias="retryCount")


class UpdateCheckResult(_CamelModel):
    """Outcome of a single update check."""

    current_version: str = Field(alias="currentVersion")
    latest_version: str = Field(alias="latestVersion")
    update_available: bool = Field(alias="updateAvailable")
    can_update: bool = Field(alias="canUpdate")
    reason: Optional[str] = None


class UpdateResult(_CamelModel):
    """Outcome of an install attempt."""

    success: bool
    previous_version: str = Field(alias="previousVersion")
    new_version: str = Field(alias="newVersion")
    error: Optional[str] = None
