"""
Hot-swaps the yt-dlp binary when a newer release is published.

An attempt only proceeds while no job holds a slot, and dispatch stays paused
until it ends. Every attempt that touched the live binary either confirms the
new one works or restores the backup, so the installed binary is functional
afterwards no matter how the attempt went.
"""

import asyncio
import logging
import os
import shutil
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Optional

from vidfetch.core.registry import JobRegistry
from vidfetch.exceptions import (
    RollbackError,
    UpdateDeferred,
    VerificationError,
    VersionProbeError,
)
from vidfetch.models.config import ServiceConfig
from vidfetch.models.update import (
    ReleaseDescriptor,
    UpdateCheckResult,
    UpdateResult,
    UpdateStatus,
)
from vidfetch.utils.structured_logger import StructuredLogger, UpdateEventLogger

from .release_feed import GitHubReleaseFeed, ReleaseFeed
from .versioning import compare_versions, is_newer

log = logging.getLogger(__name__)

REASON_IN_PROGRESS = "Update already in progress"
REASON_DOWNLOADS_ACTIVE = "Downloads in progress"
REASON_UP_TO_DATE = "Already running latest version"
REASON_DRY_RUN = "Dry-run mode - update would have proceeded"

_EXEC_BITS = 0o111


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _replace_executable(source: str, target: str, mode: int) -> None:
    """Copies `source` next to `target` and atomically renames it into place."""
    temp_path = f"{target}.vidfetch-tmp"
    try:
        shutil.copy2(source, temp_path)
        os.chmod(temp_path, mode)
        os.replace(temp_path, target)
    finally:
        with suppress(FileNotFoundError):
            os.remove(temp_path)


def _remove_quietly(*paths: str) -> None:
    for path in paths:
        with suppress(FileNotFoundError):
            os.remove(path)


class BinaryUpdateManager:
    """Checks the release feed and installs new yt-dlp builds safely."""

    def __init__(
        self,
        config: ServiceConfig,
        registry: JobRegistry,
        feed: Optional[ReleaseFeed] = None,
        update_logger: Optional[UpdateEventLogger] = None,
    ):
        self.config = config
        self.registry = registry
        self.binary_path = os.path.expanduser(config.ytdlp_path)
        self.backup_path = os.path.expanduser(config.binary_backup_path)
        self.staging_path = os.path.expanduser(config.binary_staging_path)
        self.feed = feed or GitHubReleaseFeed(
            api_url=config.release_api_url,
            download_url=config.release_download_url,
            asset_name=os.path.basename(self.binary_path),
        )
        self.events = update_logger or UpdateEventLogger(
            StructuredLogger("vidfetch.events")
        )

        self._status = UpdateStatus()
        self._attempt_lock = asyncio.Lock()
        self._backup_taken = False
        self._last_known_version: Optional[str] = None
        self._last_latest_version: Optional[str] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_update_status(self) -> UpdateStatus:
        return self._status.model_copy()

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    async def get_current_version(self, binary_path: Optional[str] = None) -> str:
        """
        Runs `<binary> --version` and returns its single line of output.

        Raises:
            VersionProbeError: If the binary cannot run, times out, exits non-zero
                or prints anything other than exactly one line.
        """
        path = binary_path or self.binary_path
        try:
            process = await asyncio.create_subprocess_exec(
                path,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VersionProbeError(f"Could not run '{path}': {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), self.config.probe_timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise VersionProbeError(
                f"'{path} --version' did not answer within"
                f" {self.config.probe_timeout}s"
            ) from e

        if process.returncode != 0:
            raise VersionProbeError(
                f"'{path} --version' exited with code {process.returncode}"
            )
        lines = [
            line.strip()
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if len(lines) != 1:
            raise VersionProbeError(
                f"'{path} --version' printed {len(lines)} lines, expected exactly one"
            )

        if path == self.binary_path:
            self._last_known_version = lines[0]
        return lines[0]

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------
    async def check_for_updates(self, dry_run: bool = False) -> UpdateCheckResult:
        """
        Compares the installed binary with the latest release and installs the
        release when no job is running.

        Raises:
            VersionProbeError: If the installed binary cannot be probed.
            ReleaseFeedError: If the latest release cannot be fetched.
        """
        if self._attempt_lock.locked():
            return UpdateCheckResult(
                current_version=self._last_known_version or "unknown",
                latest_version=self._last_latest_version or "unknown",
                update_available=False,
                can_update=False,
                reason=REASON_IN_PROGRESS,
            )

        async with self._attempt_lock:
            started = time.monotonic()
            self._status.last_check = _utcnow()

            current_version = await self.get_current_version()
            release = await self.feed.fetch_latest()
            latest_version = release.version
            self._last_latest_version = latest_version
            try:
                update_available = is_newer(latest_version, current_version)
            except ValueError as e:
                raise VersionProbeError(f"Cannot compare versions: {e}") from e

            self.events.check_completed(
                current_version,
                latest_version,
                update_available,
                (time.monotonic() - started) * 1000,
            )

            def result(can_update: bool, reason: Optional[str]) -> UpdateCheckResult:
                return UpdateCheckResult(
                    current_version=current_version,
                    latest_version=latest_version,
                    update_available=update_available,
                    can_update=can_update,
                    reason=reason,
                )

            active = self.registry.active_count
            if active:
                if update_available:
                    self._defer(active)
                return result(False, REASON_DOWNLOADS_ACTIVE)
            if not update_available:
                return result(False, REASON_UP_TO_DATE)
            if dry_run:
                return result(False, REASON_DRY_RUN)

            try:
                async with self.registry.exclusive_maintenance():
                    outcome = await self.perform_update(release, current_version)
            except UpdateDeferred as e:
                log.debug(f"Update deferred at the gate: {e}")
                self._defer(self.registry.active_count)
                return result(False, REASON_DOWNLOADS_ACTIVE)

            if outcome.success:
                return result(True, None)
            return result(True, f"Update failed: {outcome.error}")

    def _defer(self, active_downloads: int) -> None:
        log.info(
            f"[yellow]yt-dlp update postponed: {active_downloads} download(s)"
            " in progress.[/yellow]"
        )
        self._schedule_retry()
        self.events.update_deferred(active_downloads, self._status.retry_count)

    # ------------------------------------------------------------------
    # Updating
    # ------------------------------------------------------------------
    async def perform_update(
        self, release: ReleaseDescriptor, current_version: str
    ) -> UpdateResult:
        """
        Downloads, verifies, backs up, installs and re-checks. Any failure rolls
        the live binary back and schedules a retry. Callers must hold the
        registry's maintenance window.
        """
        started = time.monotonic()
        self._status.is_updating = True
        self._status.last_attempt = _utcnow()
        self._backup_taken = False
        log.info(f"Updating yt-dlp from {current_version} to {release.version}...")

        try:
            await asyncio.to_thread(_remove_quietly, self.staging_path)
            await self.download_new_binary(release)
            await self.verify_new_binary(release.version)
            await self.backup_current_binary()
            await self.install_new_binary()
            installed_version = await self.test_installed_binary(release.version)
            await self.cleanup()
        except Exception as e:
            error = str(e) or type(e).__name__
            log.error(f"[red]✗ yt-dlp update failed: {error}[/red]")
            await self._rollback_safely()
            self._schedule_retry()
            self.events.update_failed(
                error, (time.monotonic() - started) * 1000, self._status.retry_count
            )
            return UpdateResult(
                success=False,
                previous_version=current_version,
                new_version=release.version,
                error=error,
            )
        finally:
            self._status.is_updating = False

        self._status.retry_count = 0
        self.events.update_succeeded(
            current_version, installed_version, (time.monotonic() - started) * 1000
        )
        log.info(f"[green]✓ yt-dlp updated to {installed_version}[/green]")
        return UpdateResult(
            success=True,
            previous_version=current_version,
            new_version=installed_version,
        )

    async def download_new_binary(self, release: ReleaseDescriptor) -> None:
        """Fetches the release's binary into the staging path and marks it executable."""
        await self.feed.download_binary(release, self.staging_path)
        await asyncio.to_thread(os.chmod, self.staging_path, 0o755)

    async def verify_new_binary(self, expected_version: str) -> str:
        """
        Confirms the staged binary runs and reports `expected_version`.

        Raises:
            VerificationError: If it is not executable, cannot be probed, or
                reports a different or unparseable version.
        """
        if not await asyncio.to_thread(os.access, self.staging_path, os.X_OK):
            raise VerificationError(f"'{self.staging_path}' is not executable")
        try:
            version = await self.get_current_version(self.staging_path)
        except VersionProbeError as e:
            raise VerificationError(f"New binary failed its version check: {e}") from e
        self._ensure_version(version, expected_version, "New binary")
        return version

    async def backup_current_binary(self) -> None:
        """Copies the live binary, with its metadata, to the backup path."""
        await asyncio.to_thread(shutil.copy2, self.binary_path, self.backup_path)
        self._backup_taken = True
        log.debug(f"Backed up '{self.binary_path}' to '{self.backup_path}'.")

    async def install_new_binary(self) -> None:
        """Replaces the live binary with the staged one, keeping its permissions."""

        def _install() -> None:
            mode = (os.stat(self.binary_path).st_mode & 0o777) | _EXEC_BITS
            _replace_executable(self.staging_path, self.binary_path, mode)

        await asyncio.to_thread(_install)
        log.debug(f"Installed new binary at '{self.binary_path}'.")

    async def test_installed_binary(self, expected_version: str) -> str:
        """
        Probes the live binary after installation.

        Raises:
            VerificationError: If the probe fails or the version does not match.
        """
        try:
            version = await self.get_current_version()
        except VersionProbeError as e:
            raise VerificationError(f"Installed binary is not functional: {e}") from e
        self._ensure_version(version, expected_version, "Installed binary")
        return version

    @staticmethod
    def _ensure_version(version: str, expected: str, label: str) -> None:
        try:
            matches = compare_versions(version, expected) == 0
        except ValueError as e:
            raise VerificationError(f"{label} reported an unparseable version: {e}") from e
        if not matches:
            raise VerificationError(
                f"{label} reports version {version}, expected {expected}"
            )

    async def rollback(self) -> bool:
        """
        Restores the backup over the live binary. Only a backup taken during the
        current attempt is used.

        Returns:
            True if a backup was restored, False if there was nothing to restore.

        Raises:
            RollbackError: If the backup could not be restored.
        """
        if not self._backup_taken:
            log.debug("No backup taken in this attempt; live binary untouched.")
            return False

        def _restore() -> None:
            mode = (os.stat(self.backup_path).st_mode & 0o777) | _EXEC_BITS
            _replace_executable(self.backup_path, self.binary_path, mode)

        try:
            await asyncio.to_thread(_restore)
        except OSError as e:
            raise RollbackError(
                f"Could not restore '{self.binary_path}' from '{self.backup_path}': {e}"
            ) from e
        log.warning("[yellow]Restored previous yt-dlp from backup.[/yellow]")
        return True

    async def _rollback_safely(self) -> None:
        try:
            restored = await self.rollback()
        except RollbackError as e:
            log.critical(
                f"[bold red]Rollback failed, manual intervention required: {e}"
                "[/bold red]"
            )
            self.events.rolled_back(False)
            return
        if restored:
            self.events.rolled_back(True)
        await asyncio.to_thread(_remove_quietly, self.staging_path)

    async def cleanup(self) -> None:
        """Removes the staged and backed-up binaries."""
        await asyncio.to_thread(_remove_quietly, self.staging_path, self.backup_path)
        self._backup_taken = False

    # ------------------------------------------------------------------
    # Retries and periodic checks
    # ------------------------------------------------------------------
    def _schedule_retry(self) -> None:
        """
        Counts a failed or deferred attempt and schedules another one after
        `update_retry_interval`. At the ceiling the count resets and retrying
        stops until the next periodic check.
        """
        if self._status.retry_count >= self.config.update_max_retries:
            log.warning(
                f"[yellow]yt-dlp update gave up after {self._status.retry_count}"
                " retries; waiting for the next scheduled check.[/yellow]"
            )
            self._status.retry_count = 0
            return

        self._status.retry_count += 1
        if self.retry_pending:
            return
        self._retry_task = asyncio.create_task(
            self._retry_after(self.config.update_retry_interval)
        )
        log.debug(
            f"Retrying yt-dlp update in {self.config.update_retry_interval}s"
            f" (attempt {self._status.retry_count}/{self.config.update_max_retries})."
        )

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.scheduled_update_check()

    async def scheduled_update_check(self) -> Optional[UpdateCheckResult]:
        """Runs one check, logging instead of raising. Used by the periodic loop."""
        if not self.config.auto_update_enabled:
            log.debug("Automatic yt-dlp updates are disabled; skipping check.")
            return None
        try:
            return await self.check_for_updates()
        except Exception as e:
            log.error(f"[red]Scheduled yt-dlp update check failed: {e}[/red]")
            self.events.update_failed(str(e), 0.0, self._status.retry_count)
            self._schedule_retry()
            return None

    async def start(self) -> None:
        """Starts the periodic check loop when automatic updates are enabled."""
        if not self.config.auto_update_enabled:
            log.debug("Automatic yt-dlp updates are disabled.")
            return
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._update_loop())
            log.debug("Started yt-dlp update loop.")

    async def _update_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.update_check_interval_seconds)
                await self.scheduled_update_check()
            except asyncio.CancelledError:
                log.debug("yt-dlp update loop cancelled.")
                break
            except Exception as e:
                log.warning(f"Error in yt-dlp update loop: {e}")

    async def stop(self) -> None:
        """Cancels the periodic loop and any pending retry."""
        for task in (self._loop_task, self._retry_task):
            if task and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._retry_task = None
        log.debug("Stopped yt-dlp update loop.")
