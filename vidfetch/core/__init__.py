"""
Core job orchestration engine.

`JobService` validates requests and registers jobs with the `JobRegistry`,
which owns the job map, the `JobQueue` and the in-progress set. The `Scheduler`
drains the queue under a concurrency limit and drives each job through the
execution collaborator.
"""

from .job_queue import JobQueue
from .job_service import JobService
from .registry import JobRegistry
from .scheduler import Scheduler

__all__ = ["JobQueue", "JobRegistry", "JobService", "Scheduler"]
