"""
Structured event logging for jobs and yt-dlp updates, with optional JSON-lines output.
"""

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.markup import escape

from vidfetch.utils.formatting import sanitize_url


class StructuredLogger:
    """
    Logger that outputs both human-readable and machine-parseable records.

    Usage:
        logger = StructuredLogger("vidfetch")
        logger.info("job_added", job_id="abc123", queue_size=2)
    """

    def __init__(self, name: str, log_dir: Optional[Path] = None):
        """
        Initialize structured logger.

        Args:
            name: Name of the underlying standard logger.
            log_dir: Directory for JSON log files (None = console only).
        """
        self.name = name
        self._logger = logging.getLogger(name)
        self._json_file = None

        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            json_log_path = log_dir / f"vidfetch_{timestamp}.jsonl"
            self._json_file = open(json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def set_session_context(self, **kwargs) -> None:
        """Set session-level context that appears in all JSON records."""
        self._session_context.update(kwargs)

    @staticmethod
    def _format_message(event: str, **context) -> str:
        parts = [f"[bold]{escape(event)}[/bold]"]
        parts.extend(f"{key}={escape(str(value))}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, ValueError) as e:
            self._logger.warning(f"JSON logging failed: {e}")

    def log(self, level: int, event: str, **context) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self._format_message(event, **context))
        self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self.log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self.log(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self.log(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self.log(logging.ERROR, event, **context)

    def close(self) -> None:
        """Close JSON log file."""
        if self._json_file and not self._json_file.closed:
            self._json_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class JobEventLogger:
    """Specialized logger for job lifecycle events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def job_added(self, job_id: str, url: str, job_type: str, queue_size: int):
        self.logger.info(
            "job_added",
            job_id=job_id,
            url=sanitize_url(url),
            job_type=job_type,
            queue_size=queue_size,
        )

    def job_started(
        self, job_id: str, url: str, in_progress: int, max_downloads: int
    ):
        self.logger.info(
            "job_started",
            job_id=job_id,
            url=sanitize_url(url),
            in_progress=in_progress,
            max_downloads=max_downloads,
        )

    def stage_completed(self, job_id: str, stage: str, duration_s: float):
        self.logger.info(
            "stage_completed",
            job_id=job_id,
            stage=stage,
            duration_s=round(duration_s, 2),
        )

    def job_finished(
        self,
        job_id: str,
        status: str,
        duration_s: float,
        error: Optional[str] = None,
    ):
        context: dict[str, Any] = {
            "job_id": job_id,
            "status": status,
            "duration_s": round(duration_s, 2),
        }
        if error:
            context["error"] = error
            self.logger.error("job_finished", **context)
        else:
            self.logger.info("job_finished", **context)

    def job_cancel_requested(self, job_id: str, status: str):
        self.logger.info("job_cancel_requested", job_id=job_id, status=status)

    def job_force_terminated(self, job_id: str, timeout_s: float):
        self.logger.warning(
            "job_force_terminated", job_id=job_id, timeout_s=round(timeout_s, 2)
        )


class UpdateEventLogger:
    """Specialized logger for binary update events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def check_completed(
        self,
        current_version: str,
        latest_version: str,
        update_available: bool,
        duration_ms: float,
    ):
        self.logger.info(
            "update_check_completed",
            current_version=current_version,
            latest_version=latest_version,
            update_available=update_available,
            duration_ms=round(duration_ms, 2),
        )

    def update_deferred(self, active_downloads: int, retry_count: int):
        self.logger.info(
            "update_deferred",
            active_downloads=active_downloads,
            retry_count=retry_count,
        )

    def update_succeeded(
        self, previous_version: str, new_version: str, duration_ms: float
    ):
        self.logger.info(
            "update_succeeded",
            previous_version=previous_version,
            new_version=new_version,
            duration_ms=round(duration_ms, 2),
        )

    def update_failed(self, error: str, duration_ms: float, retry_count: int):
        self.logger.error(
            "update_failed",
            error=error,
            duration_ms=round(duration_ms, 2),
            retry_count=retry_count,
        )

    def rolled_back(self, restored: bool):
        self.logger.warning("update_rolled_back", restored=restored)


def create_structured_logger(
    log_dir: Optional[Path] = None,
) -> tuple[StructuredLogger, JobEventLogger, UpdateEventLogger]:
    """
    Create all structured loggers.

    Returns:
        Tuple of (base_logger, job_logger, update_logger)
    """
    base = StructuredLogger("vidfetch.events", log_dir=log_dir)
    return base, JobEventLogger(base), UpdateEventLogger(base)
