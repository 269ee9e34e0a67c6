"""Scheduler module for the daemon's background jobs."""

from .job_scheduler import JobScheduler
from .task_coordinator import TaskCoordinator

__all__ = ["JobScheduler", "TaskCoordinator"]
