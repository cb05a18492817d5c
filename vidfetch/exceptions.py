"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class VidfetchError(Exception):
    """Base exception for all application-specific errors."""


class ValidationError(VidfetchError):
    """Raised when a job request has a malformed URL or an invalid time range."""


class JobNotFoundError(VidfetchError):
    """Raised when no job with the requested ID is known to the registry."""

    def __init__(self, job_id: str):
        super().__init__(f"Job with ID '{job_id}' not found")
        self.job_id = job_id


NotFoundError = JobNotFoundError


class InvalidStateError(VidfetchError):
    """Raised when an operation is not allowed for the job's current status."""


class ExecutionError(VidfetchError):
    """
    Raised by the execution collaborator when a download, conversion or upload
    step fails. The scheduler records it on the job instead of re-raising it.
    """


class VerificationError(VidfetchError):
    """Raised when a candidate or freshly installed binary is not functional."""


class VersionProbeError(VidfetchError):
    """Raised when the installed binary cannot report its version."""


class ReleaseFeedError(VidfetchError):
    """Raised when the latest release cannot be fetched or parsed."""


class RollbackError(VidfetchError):
    """Raised when restoring the backed-up binary fails."""


class UpdateDeferred(VidfetchError):
    """
    Not a failure: the binary update was postponed because jobs are in progress.
    """


class ConfigurationError(VidfetchError):
    """Raised for issues related to configuration loading or validation."""
