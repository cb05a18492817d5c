"""
Pydantic model for service configuration.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

DEFAULT_RELEASE_API_URL = "https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest"
DEFAULT_RELEASE_DOWNLOAD_URL = (
    "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"
)


class ServiceConfig(BaseModel):
    """A validated configuration model for the download service."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Scheduling
    max_downloads: int = 3
    cancel_timeout: float = 10.0
    max_finished_jobs: int = 500

    # Execution
    work_dir: str = "/tmp/vidfetch"
    ytdlp_path: str = "/usr/bin/yt-dlp"
    ffmpeg_path: str = "/usr/bin/ffmpeg"

    # Object storage
    storage_url: str = "http://localhost:9000"
    public_url: str = "http://localhost:9000"
    bucket: str = "videos"

    # Binary updates
    auto_update_enabled: bool = True
    update_check_interval: float = 24.0  # hours
    update_max_retries: int = 24
    update_retry_interval: float = 3600.0  # seconds
    binary_backup_path: str = "/tmp/yt-dlp-backup"
    binary_staging_path: str = "/tmp/yt-dlp-new"
    release_api_url: str = DEFAULT_RELEASE_API_URL
    release_download_url: str = DEFAULT_RELEASE_DOWNLOAD_URL
    probe_timeout: float = 30.0

    @field_validator("max_downloads")
    @classmethod
    def validate_max_downloads(cls, v: int) -> int:
        """Ensures a reasonable number of concurrent downloads."""
        if v < 1 or v > 32:
            raise ValueError("Max downloads must be between 1 and 32.")
        return v

    @field_validator("cancel_timeout", "update_retry_interval", "probe_timeout")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts and intervals must be greater than zero.")
        return v

    @field_validator("update_check_interval")
    @classmethod
    def validate_check_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Update check interval must be greater than zero hours.")
        return v

    @field_validator("max_finished_jobs", "update_max_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value cannot be negative.")
        return v

    @field_validator("storage_url", "public_url", "release_api_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensures URLs are absolute and drops any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"'{v}' must start with http:// or https://.")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_binary_paths(self) -> "ServiceConfig":
        """The live, backup and staging binaries must live at distinct paths."""
        paths = {
            Path(self.ytdlp_path).expanduser(),
            Path(self.binary_backup_path).expanduser(),
            Path(self.binary_staging_path).expanduser(),
        }
        if len(paths) != 3:
            raise ValueError(
                "ytdlp_path, binary_backup_path and binary_staging_path must differ."
            )
        return self

    @property
    def update_check_interval_seconds(self) -> float:
        return self.update_check_interval * 3600

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        return set(cls.model_fields)
