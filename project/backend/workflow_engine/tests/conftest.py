"""
Pytest fixtures for workflow engine tests.
"""
import pytest
import pytest_asyncio

from shared.repository import ProjectStoreWorkflowRepository
from modules.job_scheduler import JobScheduler, build_handlers
from workflow_engine.job_monitor import PollConfig
from workflow_engine.orchestrator import WorkflowOrchestrator
from workflow_engine.steps import StepServices

FAST_POLL = PollConfig(interval=0.005, initial_delay=0.0, max_attempts=400)

SCRIPT = (
    "The lighthouse keeper woke before dawn. "
    "Fog rolled over the harbour while the boats waited. "
    "By noon the storm had passed and the village came alive."
)


@pytest.fixture
def make_services(provider, project_store, object_storage, uploader, event_bus):
    """Build step services with a fresh scheduler and fast polling."""
    def _make_services():
        scheduler = JobScheduler(
            handlers=build_handlers(provider, project_store, uploader),
            events=event_bus,
            batch_size=3,
            batch_delay=0.0,
        )
        return StepServices(
            provider=provider,
            store=project_store,
            storage=object_storage,
            scheduler=scheduler,
            uploader=uploader,
            image_poll=FAST_POLL,
            video_poll=FAST_POLL,
        )
    return _make_services


@pytest.fixture
def services(make_services):
    return make_services()


@pytest_asyncio.fixture
async def orchestrator(services, event_bus, project_store):
    """Orchestrator persisting workflows through the project store."""
    orchestrator = WorkflowOrchestrator(services, event_bus, ProjectStoreWorkflowRepository(project_store))
    yield orchestrator
    await orchestrator.stop()
    await services.scheduler.stop(wait_for_jobs=False)


@pytest.fixture
def project(project_store):
    """A standard project with a three-sentence script."""
    return project_store.add_project(id="project-lighthouse-0001", title="The Lighthouse", content=SCRIPT)
