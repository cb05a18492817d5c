"""
Data Models Layer.

This package contains the dataclasses and Pydantic models that define the core
data structures used throughout the application: jobs, configuration and
binary update bookkeeping.
"""

from .config import ServiceConfig
from .job import CreateJobInput, Job, JobSnapshot, JobStatus, JobType, TimeRange
from .update import (
    ReleaseAsset,
    ReleaseDescriptor,
    UpdateCheckResult,
    UpdateResult,
    UpdateStatus,
)

__all__ = [
    "CreateJobInput",
    "Job",
    "JobSnapshot",
    "JobStatus",
    "JobType",
    "ReleaseAsset",
    "ReleaseDescriptor",
    "ServiceConfig",
    "TimeRange",
    "UpdateCheckResult",
    "UpdateResult",
    "UpdateStatus",
]
