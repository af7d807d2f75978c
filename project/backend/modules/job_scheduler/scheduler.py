"""
Job scheduler.

Runs per-scene generation jobs concurrently with each other, each job
internally throttled: batched jobs process a few items at a time with a
pause between batches, character-aware jobs process items in scene order.
Supports cooperative cancellation and a periodic retention sweep.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from shared.config import settings
from shared.errors import CancellationError, JobNotFoundError, JobTimeoutError, ValidationError
from shared.events import EventBus, EventType
from shared.logging import get_logger, set_job_id
from shared.models.job import (
    CANCELLED_MESSAGE,
    Job,
    JobItem,
    JobKind,
    JobPayload,
    JobProgress,
)
from shared.models.scene import Scene
from shared.models.workflow import utcnow
from shared.repository import CachedRepository, InMemoryRepository, Repository
from shared.retry import call_with_retry
from modules.job_scheduler.cancellation import CancellationToken
from modules.job_scheduler.processors import ItemHandler, process_batched, process_sequential

logger = get_logger("job_scheduler")

INTERRUPTED_MESSAGE = "Interrupted by restart"


class JobScheduler:
    """Bounded-concurrency scheduler for per-scene generation jobs."""

    def __init__(
        self,
        handlers: Dict[JobKind, ItemHandler],
        events: EventBus,
        repository: Optional[Repository[Job]] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        retention_seconds: Optional[float] = None,
        cleanup_interval_seconds: Optional[float] = None,
        failed_job_ttl_seconds: Optional[int] = None,
    ):
        """
        Args:
            handlers: Item handler per job kind
            events: Event bus for job lifecycle events
            repository: Job storage (default: in-memory)
            batch_size: Items per concurrent batch (default: settings)
            batch_delay: Pause between batches in seconds (default: settings)
            retention_seconds: Age after which completed jobs are swept (default: settings)
            cleanup_interval_seconds: Sweep period (default: settings)
            failed_job_ttl_seconds: TTL for failed jobs; only set for durable backends
        """
        self.handlers = handlers
        self.events = events
        self.jobs: CachedRepository[Job] = CachedRepository(repository or InMemoryRepository())
        self.batch_size = batch_size or settings.job_batch_size
        self.batch_delay = settings.job_batch_delay_seconds if batch_delay is None else batch_delay
        self.retention_seconds = (
            settings.job_retention_seconds if retention_seconds is None else retention_seconds
        )
        self.cleanup_interval_seconds = (
            settings.job_cleanup_interval_minutes * 60
            if cleanup_interval_seconds is None else cleanup_interval_seconds
        )
        self.failed_job_ttl_seconds = failed_job_ttl_seconds

        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def enqueue(self, payload: JobPayload, project_id: str, items: Sequence[JobItem]) -> str:
        """
        Record a new pending job and trigger dispatch.

        Args:
            payload: Tagged job payload; its kind selects the handler
            project_id: Owning project
            items: Work items, one per scene

        Returns:
            Job ID

        Raises:
            ValidationError: If there are no items, or a scene appears twice
        """
        if not items:
            raise ValidationError("Cannot enqueue a job with zero items")
        scene_ids = [item.scene_id for item in items]
        if len(set(scene_ids)) != len(scene_ids):
            raise ValidationError("Job items must reference distinct scenes")

        job = Job(
            id=str(uuid4()),
            project_id=project_id,
            payload=payload,
            items=tuple(items),
            progress=JobProgress(completed=0, total=len(items)),
        )
        if job.kind not in self.handlers:
            raise ValidationError(f"No handler registered for job kind {job.kind.value}")

        await self._save(job)
        logger.info(
            f"Job added: {job.kind.value} with {len(items)} items",
            extra={"job_id": job.id, "project_id": project_id, "kind": job.kind.value}
        )
        await self.events.publish(EventType.JOB_ADDED, self._job_event(job))
        await self.dispatch()
        return job.id

    async def enqueue_scenes(
        self,
        payload: JobPayload,
        project_id: str,
        scenes: Iterable[Scene],
        force_regenerate: bool = False,
    ) -> str:
        """Enqueue a job with one item per scene."""
        items = [
            JobItem(
                scene_id=scene.id,
                scene_number=scene.scene_number,
                data={"force_regenerate": force_regenerate} if force_regenerate else {},
            )
            for scene in scenes
        ]
        return await self.enqueue(payload, project_id, items)

    async def dispatch(self) -> int:
        """
        Start a processing task for every pending job not already running.

        Returns:
            Number of jobs started
        """
        started = 0
        for job in await self.jobs.list():
            if job.status != "pending" or job.id in self._tasks:
                continue
            self._tasks[job.id] = asyncio.create_task(self._run_job(job.id), name=f"job-{job.id}")
            started += 1
        return started

    async def recover(self) -> int:
        """
        Pick up jobs persisted by an earlier process.

        Jobs left processing with no local task can never finish, so they
        are marked failed; pending jobs are dispatched.

        Returns:
            Number of pending jobs started
        """
        for job in await self.jobs.list():
            if job.status != "processing" or job.id in self._tasks:
                continue
            job.status = "failed"
            job.error = INTERRUPTED_MESSAGE
            job.completed_at = utcnow()
            await self._save(job)
            logger.warning(
                f"Job interrupted at {job.progress.completed}/{job.progress.total}, marking failed",
                extra={"job_id": job.id, "project_id": job.project_id}
            )
            await self.events.publish(EventType.JOB_FAILED, self._job_event(job))
        started = await self.dispatch()
        if started:
            logger.info(f"Dispatched {started} pending jobs on startup", extra={"started": started})
        return started

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _run_job(self, job_id: str) -> None:
        set_job_id(job_id)
        token = self._tokens.setdefault(job_id, CancellationToken(job_id))
        job = await self.jobs.get(job_id)
        try:
            if job is None or job.is_terminal or token.cancelled:
                return

            job.status = "processing"
            await self._save(job)
            await self.events.publish(EventType.JOB_UPDATED, self._job_event(job))

            handler = self.handlers[job.kind]

            async def on_item_done(item: JobItem, result: Optional[str], error: Optional[str]) -> None:
                await self._record_item(job, item, result, error)

            if job.kind == JobKind.CHARACTER_IMAGE_GENERATION:
                await process_sequential(job, handler, token, on_item_done)
            else:
                await process_batched(job, handler, token, on_item_done, self.batch_size, self.batch_delay)

            if not job.is_terminal:
                job.status = "completed"
                job.completed_at = utcnow()
                await self._save(job)
                logger.info(
                    f"Job completed: {job.progress.completed}/{job.progress.total} items processed, "
                    f"{len(job.item_errors)} failed",
                    extra={"job_id": job.id, "failed_items": len(job.item_errors)}
                )
                await self.events.publish(EventType.JOB_COMPLETED, self._job_event(job))
        except CancellationError:
            logger.info("Job processing stopped after cancellation", extra={"job_id": job_id})
        except Exception as e:
            logger.error("Job processing failed", exc_info=e, extra={"job_id": job_id})
            if job is not None and not job.is_terminal:
                job.status = "failed"
                job.error = str(e) or e.__class__.__name__
                job.completed_at = utcnow()
                await self._save(job)
                await self.events.publish(EventType.JOB_FAILED, self._job_event(job))
        finally:
            self._tasks.pop(job_id, None)
            self._tokens.pop(job_id, None)
            set_job_id(None)

    async def _record_item(self, job: Job, item: JobItem, result: Optional[str], error: Optional[str]) -> None:
        # Progress is frozen once the job is terminal (e.g. cancelled mid-batch)
        if job.is_terminal:
            return
        job.results[item.scene_id] = result
        if error is not None:
            job.item_errors[item.scene_id] = error
        job.progress.completed = min(job.progress.completed + 1, job.progress.total)
        await self._save(job)
        await self.events.publish(EventType.JOB_PROGRESS, {
            "jobId": job.id,
            "projectId": job.project_id,
            "itemId": item.scene_id,
            "sceneNumber": item.scene_number,
            "result": result,
            "error": error,
            "progress": job.progress.model_dump(),
        })

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job.

        Items already running finish; no new items start.

        Returns:
            False if the job is unknown or already terminal
        """
        job = await self.jobs.get(job_id)
        if job is None or job.is_terminal:
            return False

        token = self._tokens.setdefault(job_id, CancellationToken(job_id))
        token.cancel(CANCELLED_MESSAGE)
        if job_id not in self._tasks:
            self._tokens.pop(job_id, None)

        job.status = "failed"
        job.error = CANCELLED_MESSAGE
        job.completed_at = utcnow()
        await self._save(job)
        logger.info(
            f"Job cancelled at {job.progress.completed}/{job.progress.total}",
            extra={"job_id": job_id, "project_id": job.project_id}
        )
        await self.events.publish(EventType.JOB_CANCELLED, self._job_event(job))
        return True

    async def cancel_jobs_by_project(self, project_id: str) -> int:
        """Cancel every pending/processing job of a project. Returns the count."""
        cancelled = 0
        for job in await self.get_jobs_by_project(project_id):
            if await self.cancel_job(job.id):
                cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.jobs.get(job_id)

    async def require_job(self, job_id: str) -> Job:
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return job

    async def list_jobs(self) -> List[Job]:
        """All jobs, newest first."""
        return sorted(await self.jobs.list(), key=lambda job: job.created_at, reverse=True)

    async def get_jobs_by_project(self, project_id: str) -> List[Job]:
        return [job for job in await self.list_jobs() if job.project_id == project_id]

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None, poll_interval: float = 0.05) -> Job:
        """
        Wait until a job is terminal.

        Raises:
            JobNotFoundError: If the job does not exist
            JobTimeoutError: If timeout elapses first
        """
        async def _wait() -> Job:
            while True:
                job = await self.require_job(job_id)
                if job.is_terminal and job_id not in self._tasks:
                    return job
                await asyncio.sleep(poll_interval)

        try:
            return await asyncio.wait_for(_wait(), timeout)
        except asyncio.TimeoutError as e:
            raise JobTimeoutError(f"Job {job_id} did not finish within {timeout}s") from e

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Delete completed jobs older than the retention period.

        Failed jobs are kept for diagnostics.

        Returns:
            Number of jobs deleted
        """
        cutoff = (now or utcnow()) - timedelta(seconds=self.retention_seconds)
        removed = 0
        for job in await self.jobs.list():
            if job.status == "completed" and (job.completed_at or job.created_at) < cutoff:
                await call_with_retry(lambda: self.jobs.delete(job.id), description=f"delete job {job.id}")
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old jobs", extra={"removed": removed})
        return removed

    async def clear_completed_jobs(self) -> int:
        """Delete every completed job regardless of age."""
        removed = 0
        for job in await self.jobs.list():
            if job.status == "completed":
                await call_with_retry(lambda: self.jobs.delete(job.id), description=f"delete job {job.id}")
                removed += 1
        return removed

    async def run_periodic_cleanup(self) -> None:
        """Run the retention sweep forever at the configured interval."""
        while True:
            try:
                await self.cleanup_old_jobs()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Job cleanup loop failed", extra={"error": str(exc)}, exc_info=True)
            await asyncio.sleep(self.cleanup_interval_seconds)

    def start(self) -> None:
        """Start the periodic retention sweep."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self.run_periodic_cleanup(), name="job-cleanup")

    async def stop(self, wait_for_jobs: bool = True) -> None:
        """Stop the sweep and, optionally, wait for running jobs to finish."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        tasks = list(self._tasks.values())
        if not tasks:
            return
        if not wait_for_jobs:
            for task in tasks:
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _save(self, job: Job) -> None:
        ttl = self.failed_job_ttl_seconds if job.status == "failed" else None
        await call_with_retry(lambda: self.jobs.put(job, ttl_seconds=ttl), description=f"save job {job.id}")

    @staticmethod
    def _job_event(job: Job) -> Dict:
        return {
            "jobId": job.id,
            "projectId": job.project_id,
            "kind": job.kind.value,
            "status": job.status,
            "progress": job.progress.model_dump(),
            "error": job.error,
        }
