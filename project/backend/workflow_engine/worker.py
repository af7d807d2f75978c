"""
Engine wiring and worker lifecycle.

Builds the event bus, scheduler, uploader and orchestrator over the external
collaborators, picks the job repository backend from settings, and resumes
interrupted workflows on startup.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from shared.config import settings
from shared.events import EventBus
from shared.interfaces import GenerationProvider, ObjectStorage, ProjectStore
from shared.logging import get_logger
from shared.models.job import Job
from shared.redis_client import RedisClient
from shared.repository import InMemoryRepository, ProjectStoreWorkflowRepository, RedisRepository, Repository
from modules.job_scheduler import JobScheduler, build_handlers
from modules.scene_assets import SceneAssetUploader
from workflow_engine.job_monitor import PollConfig
from workflow_engine.orchestrator import WorkflowOrchestrator
from workflow_engine.steps import StepServices

logger = get_logger("workflow_engine")


@dataclass
class Engine:
    """A wired pipeline engine."""

    events: EventBus
    scheduler: JobScheduler
    orchestrator: WorkflowOrchestrator
    uploader: SceneAssetUploader
    redis: Optional[RedisClient] = None


def build_engine(
    provider: GenerationProvider,
    store: ProjectStore,
    storage: ObjectStorage,
    events: Optional[EventBus] = None,
    image_poll: Optional[PollConfig] = None,
    video_poll: Optional[PollConfig] = None,
    **scheduler_options,
) -> Engine:
    """
    Wire the engine.

    Workflows are persisted through the project store's workflow records.
    Jobs live in memory, or in Redis when PERSISTENCE_BACKEND=redis, where
    failed jobs also get a TTL.

    Args:
        provider: Generation provider
        store: Project store
        storage: Object storage
        events: Event bus (default: a new one)
        image_poll: Poll pacing for image jobs (default: settings)
        video_poll: Poll pacing for video jobs (default: settings)
        **scheduler_options: Extra JobScheduler keyword arguments

    Raises:
        ConfigError: If the Redis backend is selected and the client cannot be created
    """
    events = events or EventBus()
    redis: Optional[RedisClient] = None
    job_repository: Repository[Job]
    if settings.persistence_backend == "redis":
        redis = RedisClient()
        job_repository = RedisRepository(Job, "jobs", redis)
        scheduler_options.setdefault("failed_job_ttl_seconds", settings.failed_job_ttl_seconds)
    else:
        job_repository = InMemoryRepository()

    uploader = SceneAssetUploader(storage, store)
    scheduler = JobScheduler(
        handlers=build_handlers(provider, store, uploader),
        events=events,
        repository=job_repository,
        **scheduler_options,
    )
    services = StepServices(
        provider=provider,
        store=store,
        storage=storage,
        scheduler=scheduler,
        uploader=uploader,
        image_poll=image_poll or PollConfig.for_images(),
        video_poll=video_poll or PollConfig.for_videos(),
    )
    orchestrator = WorkflowOrchestrator(services, events, ProjectStoreWorkflowRepository(store))

    logger.info(
        "Engine built",
        extra={"persistence_backend": settings.persistence_backend, "environment": settings.environment}
    )
    return Engine(events=events, scheduler=scheduler, orchestrator=orchestrator, uploader=uploader, redis=redis)


async def start_engine(engine: Engine) -> None:
    """Start the job retention sweep, pick up persisted jobs and resume interrupted workflows."""
    if engine.redis is not None and not await engine.redis.health_check():
        logger.warning("Redis health check failed at startup")
    engine.scheduler.start()
    dispatched = await engine.scheduler.recover()
    resumed = await engine.orchestrator.resume_interrupted_workflows()
    logger.info("Engine started", extra={"dispatched_jobs": dispatched, "resumed_workflows": len(resumed)})


async def stop_engine(engine: Engine, wait_for_jobs: bool = False) -> None:
    """Stop workflows and jobs; persisted state is left for the next start."""
    await engine.orchestrator.stop()
    await engine.scheduler.stop(wait_for_jobs=wait_for_jobs)
    if engine.redis is not None:
        await engine.redis.close()
    logger.info("Engine stopped")


async def serve(engine: Engine, stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Run the engine until stop_event is set or the task is cancelled.

    Args:
        engine: Engine from build_engine
        stop_event: Event that ends the run (default: run until cancelled)
    """
    stop_event = stop_event or asyncio.Event()
    await start_engine(engine)
    try:
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Worker loop cancelled")
        raise
    finally:
        await stop_engine(engine)
