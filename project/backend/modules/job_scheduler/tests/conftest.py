"""
Pytest fixtures for job scheduler tests.
"""
import asyncio

import pytest

from shared.models.job import ImageGenerationPayload, JobItem, JobKind
from modules.job_scheduler.handlers import build_handlers
from modules.job_scheduler.scheduler import JobScheduler


@pytest.fixture
def image_payload():
    return ImageGenerationPayload(style="cinematic")


@pytest.fixture
def make_items():
    """Build job items for scene numbers 1..count."""
    def _make_items(count, project_id="p1"):
        return [
            JobItem(scene_id=f"{project_id}-scene-{n}", scene_number=n)
            for n in range(1, count + 1)
        ]
    return _make_items


@pytest.fixture
def recording_handler():
    """Item handler that records start order and can be gated or told to fail."""
    class RecordingHandler:
        def __init__(self):
            self.started = []
            self.finished = []
            self.fail_scenes = set()
            self.delay = 0.0
            self.gate = None
            self.active = 0
            self.max_active = 0

        async def __call__(self, job, item):
            self.started.append(item.scene_number)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            try:
                if self.gate is not None:
                    await self.gate.wait()
                if self.delay:
                    await asyncio.sleep(self.delay)
            finally:
                self.active -= 1
            self.finished.append(item.scene_number)
            if item.scene_number in self.fail_scenes:
                raise RuntimeError(f"scene {item.scene_number} failed")
            return f"https://assets.test/{item.scene_id}.png"

    return RecordingHandler()


@pytest.fixture
def scheduler(recording_handler, event_bus):
    """Scheduler with a recording handler for every kind and no batch delay."""
    return JobScheduler(
        handlers={kind: recording_handler for kind in JobKind},
        events=event_bus,
        batch_size=3,
        batch_delay=0.0,
        retention_seconds=3600,
        cleanup_interval_seconds=0.01,
    )


@pytest.fixture
def provider_scheduler(provider, project_store, uploader, event_bus):
    """Scheduler wired to the real handlers over the fakes."""
    return JobScheduler(
        handlers=build_handlers(provider, project_store, uploader),
        events=event_bus,
        batch_size=3,
        batch_delay=0.0,
    )
