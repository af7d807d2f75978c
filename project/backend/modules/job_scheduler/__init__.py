"""
Job Scheduler module.

Runs per-scene generation jobs with batched or sequential processing,
cooperative cancellation and a periodic retention sweep.
"""

from modules.job_scheduler.cancellation import CancellationToken
from modules.job_scheduler.handlers import build_handlers
from modules.job_scheduler.scheduler import JobScheduler

__all__ = ["JobScheduler", "CancellationToken", "build_handlers"]
