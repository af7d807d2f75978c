"""
Job poll loop used by steps that delegate per-scene work to the scheduler.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from shared.config import settings
from shared.errors import JobTimeoutError
from shared.logging import get_logger
from shared.models.job import Job, JobProgress
from modules.job_scheduler.scheduler import JobScheduler

logger = get_logger("workflow_engine")

ProgressCallback = Callable[[JobProgress], Awaitable[None]]


@dataclass(frozen=True)
class PollConfig:
    """Pacing of one poll loop."""

    interval: float
    initial_delay: float = 0.0
    max_attempts: int = 720

    @classmethod
    def for_images(cls) -> "PollConfig":
        return cls(
            interval=settings.image_poll_interval_seconds,
            initial_delay=settings.image_poll_initial_delay_seconds,
            max_attempts=settings.job_poll_max_attempts,
        )

    @classmethod
    def for_videos(cls) -> "PollConfig":
        return cls(
            interval=settings.video_poll_interval_seconds,
            initial_delay=settings.video_poll_initial_delay_seconds,
            max_attempts=settings.job_poll_max_attempts,
        )


def job_step_progress(progress: JobProgress, start: int = 10, end: int = 95) -> int:
    """
    Map job progress into a step progress percentage.

    Args:
        progress: Job completed/total counters
        start: Step progress when the job has processed nothing
        end: Step progress when every item is processed

    Returns:
        Progress percentage clamped to [start, end]
    """
    if progress.total == 0:
        return start
    ratio = progress.completed / progress.total
    return max(start, min(start + int(ratio * (end - start)), end))


async def await_job_completion(
    scheduler: JobScheduler,
    job_id: str,
    poll: PollConfig,
    on_progress: Optional[ProgressCallback] = None,
) -> Job:
    """
    Poll a job until it reaches a terminal state.

    Waits poll.initial_delay, then checks the job every poll.interval
    seconds, reporting progress on each check.

    Returns:
        The terminal job

    Raises:
        JobNotFoundError: If the job disappears
        JobTimeoutError: If the job is still running after poll.max_attempts checks
    """
    if poll.initial_delay > 0:
        await asyncio.sleep(poll.initial_delay)

    last_completed = -1
    for attempt in range(1, poll.max_attempts + 1):
        job = await scheduler.require_job(job_id)
        if on_progress is not None and job.progress.completed != last_completed:
            last_completed = job.progress.completed
            await on_progress(job.progress)
        if job.is_terminal:
            logger.info(
                f"Job {job_id} finished with status {job.status} after {attempt} polls",
                extra={"job_id": job_id, "status": job.status, "attempts": attempt}
            )
            return job
        await asyncio.sleep(poll.interval)

    raise JobTimeoutError(
        f"Job {job_id} did not finish after {poll.max_attempts} polls",
        details={"job_id": job_id, "interval": poll.interval}
    )
