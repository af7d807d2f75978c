"""
Tests for workflow orchestration: step sequencing, failure, soft steps and resume.
"""
import asyncio

import pytest

from shared.errors import CriticalIntegrityError, ValidationError, WorkflowNotFoundError
from shared.events import EventType
from shared.interfaces import CharacterExtraction, MusicAnalysis
from shared.repository import ProjectStoreWorkflowRepository
from workflow_engine.orchestrator import WorkflowOrchestrator, workflow_progress

VALID_IMAGE_URL = "https://cdn.example.com/projects/project-lighthouse-0001/scenes/1/image.png"


async def wait_until(predicate, timeout=3.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.002)
    await asyncio.wait_for(_poll(), timeout)


def event_types(bus):
    return [event.type for event in bus.recorded]


@pytest.mark.asyncio
async def test_standard_workflow_runs_every_step(orchestrator, project, project_store, provider, event_bus):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    assert all(step.status == "completed" for step in workflow.steps)
    assert all(step.progress == 100 for step in workflow.steps)
    assert workflow.completed_at is not None

    stored = project_store.projects[project.id]
    assert stored.audio_duration == 60.0
    assert stored.status == "completed"
    assert stored.thumbnail_url.endswith("/thumbnail.png")

    scenes = await project_store.get_scenes_by_project(project.id)
    assert len(scenes) == 4
    assert scenes[0].start_seconds == 0
    assert scenes[-1].end_seconds == pytest.approx(60.0, abs=0.005)
    for earlier, later in zip(scenes, scenes[1:]):
        assert earlier.end_seconds == later.start_seconds
    assert all(scene.image_verified for scene in scenes)
    assert all(scene.video_prompt for scene in scenes)

    images = workflow.step("generate_images").result
    assert images["succeeded"] == 4
    assert images["failed"] == 0


@pytest.mark.asyncio
async def test_creation_state(orchestrator, project, project_store, event_bus):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)
    workflow = await orchestrator.get_workflow(workflow_id)

    assert workflow.status == "pending"
    assert workflow.current_step_index == 1
    assert workflow.steps[0].id == "create"
    assert workflow.steps[0].status == "completed"
    assert all(step.status == "pending" for step in workflow.steps[1:])
    assert workflow_id in project_store.workflow_records
    assert event_types(event_bus) == [EventType.WORKFLOW_CREATED]


@pytest.mark.asyncio
async def test_create_requires_project_id_and_known_type(orchestrator, project):
    with pytest.raises(ValidationError):
        await orchestrator.create_workflow("standard", {})
    with pytest.raises(ValidationError):
        await orchestrator.create_workflow("podcast", {"project_id": project.id})


@pytest.mark.asyncio
async def test_integrity_failure_halts_workflow(orchestrator, project, provider, event_bus):
    provider.narration_bytes = b"tiny"

    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "failed"
    assert workflow.current_step_index == 1
    assert workflow.failed_step_id == "generate_audio"
    assert "too small" in workflow.last_error
    assert workflow.step("generate_audio").status == "failed"
    assert workflow.step("generate_scenes").status == "pending"
    assert provider.called("breakdown_scenes") == 0

    failed = [e for e in event_bus.recorded if e.type == EventType.WORKFLOW_FAILED]
    assert len(failed) == 1
    assert failed[0].data["failedStepId"] == "generate_audio"
    assert EventType.WORKFLOW_COMPLETED not in event_types(event_bus)


@pytest.mark.asyncio
async def test_missing_narration_file_is_critical(orchestrator, project, provider, object_storage):
    original = object_storage.download_to_buffer

    async def missing(key):
        if key == "projects/narration/audio.mp3":
            raise FileNotFoundError(key)
        return await original(key)

    object_storage.download_to_buffer = missing
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "failed"
    assert workflow.failed_step_id == "generate_audio"
    assert "missing from storage" in workflow.last_error


@pytest.mark.asyncio
async def test_soft_step_failure_degrades_to_skipped(orchestrator, project, provider):
    provider.thumbnail_errors = [RuntimeError("thumbnail provider down")]

    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    thumbnail = workflow.step("generate_thumbnail")
    assert thumbnail.status == "completed"
    assert thumbnail.result == {"skipped": True, "reason": "thumbnail provider down"}


@pytest.mark.asyncio
async def test_soft_step_never_absorbs_integrity_errors(orchestrator, project, provider):
    provider.character_error = CriticalIntegrityError("scene records corrupted")

    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "failed"
    assert workflow.failed_step_id == "extract_characters"
    assert workflow.step("generate_images").status == "pending"


@pytest.mark.asyncio
async def test_thumbnail_retries_with_generic_title_after_rejection(orchestrator, project, provider):
    provider.thumbnail_errors = [RuntimeError("Request rejected by safety system")]

    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    titles = [call[1] for call in provider.calls if call[0] == "generate_thumbnail"]
    assert titles[0] == "The Lighthouse"
    assert len(titles) == 2 and titles[1] != "The Lighthouse"
    assert "thumbnailUrl" in workflow.step("generate_thumbnail").result


@pytest.mark.asyncio
async def test_execute_is_idempotent_for_terminal_workflows(orchestrator, project, provider):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    await orchestrator.wait_for_workflow(workflow_id, timeout=5)
    calls = len(provider.calls)

    workflow = await orchestrator.execute_workflow(workflow_id)

    assert workflow.status == "completed"
    assert len(provider.calls) == calls


@pytest.mark.asyncio
async def test_concurrent_execution_runs_once(orchestrator, project, provider):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)

    await asyncio.gather(
        orchestrator.execute_workflow(workflow_id),
        orchestrator.execute_workflow(workflow_id),
    )
    await wait_until(lambda: workflow_id not in orchestrator._executing)

    assert provider.called("synthesize_narration") == 1
    assert (await orchestrator.get_workflow(workflow_id)).status == "completed"


@pytest.mark.asyncio
async def test_resume_after_crash_continues_from_unfinished_step(
    orchestrator, make_services, project, project_store, provider, event_bus
):
    provider.item_delay = 0.2
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})

    def images_running():
        record = project_store.workflow_records.get(workflow_id, {})
        statuses = {step["id"]: step["status"] for step in record.get("steps", [])}
        return statuses.get("generate_images") == "processing"

    await wait_until(images_running)
    # simulate a process crash mid-step
    await orchestrator.stop()
    await orchestrator.services.scheduler.stop(wait_for_jobs=False)
    persisted = {step["id"]: step["status"] for step in project_store.workflow_records[workflow_id]["steps"]}

    provider.item_delay = 0.0
    restarted = WorkflowOrchestrator(make_services(), event_bus, ProjectStoreWorkflowRepository(project_store))
    loaded = await restarted.get_workflow(workflow_id)
    assert loaded.step_statuses() == persisted
    assert loaded.step("generate_audio").status == "completed"
    assert loaded.step("generate_images").status == "processing"

    workflow = await restarted.execute_workflow(workflow_id)

    assert workflow.status == "completed"
    assert provider.called("synthesize_narration") == 1
    assert provider.called("breakdown_scenes") == 1
    await restarted.services.scheduler.stop()


@pytest.mark.asyncio
async def test_resume_interrupted_workflows(orchestrator, project, project_store):
    pending_id = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)

    resumed = await orchestrator.resume_interrupted_workflows()
    workflow = await orchestrator.wait_for_workflow(pending_id, timeout=5)

    assert resumed == [pending_id]
    assert workflow.status == "completed"
    assert await orchestrator.resume_interrupted_workflows() == []


@pytest.mark.asyncio
async def test_get_workflow_loads_from_store_when_not_cached(orchestrator, project, project_store):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)
    orchestrator.workflows.evict()

    workflow = await orchestrator.get_workflow(workflow_id)

    assert workflow.id == workflow_id
    assert orchestrator.workflows.is_cached(workflow_id)
    with pytest.raises(WorkflowNotFoundError):
        await orchestrator.get_workflow("missing")


@pytest.mark.asyncio
async def test_terminal_workflows_leave_the_cache(orchestrator, project, project_store):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)

    await orchestrator.execute_workflow(workflow_id)

    assert not orchestrator.workflows.is_cached(workflow_id)
    assert project_store.workflow_records[workflow_id]["status"] == "completed"
    assert (await orchestrator.get_workflow(workflow_id)).status == "completed"


@pytest.mark.asyncio
async def test_save_failure_after_step_fails_the_step(orchestrator, project, project_store, event_bus):
    save_record = project_store.update_workflow_record

    async def update_until_audio_done(workflow_id, record):
        if record["steps"][1]["status"] == "completed":
            raise ConnectionError("database unavailable")
        await save_record(workflow_id, record)

    project_store.update_workflow_record = update_until_audio_done
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "failed"
    assert workflow.failed_step_id == "generate_audio"
    assert workflow.step("generate_audio").status == "failed"
    assert "database unavailable" in workflow.last_error
    assert workflow.step("generate_scenes").status == "pending"
    record = project_store.workflow_records[workflow_id]
    assert record["status"] == "failed"
    assert record["failed_step_id"] == "generate_audio"
    assert event_types(event_bus)[-1] == EventType.WORKFLOW_FAILED


@pytest.mark.asyncio
async def test_unpersisted_failure_is_still_visible(orchestrator, project, project_store, event_bus):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)

    async def store_down(workflow_id, record):
        raise ConnectionError("database unavailable")

    project_store.update_workflow_record = store_down
    workflow = await orchestrator.execute_workflow(workflow_id)

    assert workflow.status == "failed"
    assert workflow.failed_step_id == "generate_audio"
    assert workflow.last_error
    assert project_store.workflow_records[workflow_id]["status"] == "pending"
    assert orchestrator.workflows.is_cached(workflow_id)
    assert (await orchestrator.get_workflow(workflow_id)).status == "failed"
    assert event_types(event_bus)[-1] == EventType.WORKFLOW_FAILED


@pytest.mark.asyncio
async def test_list_workflows_by_project(orchestrator, project, project_store):
    project_store.add_project(id="other-project")
    first = await orchestrator.create_workflow("standard", {"project_id": project.id}, start=False)
    second = await orchestrator.create_workflow("animation", {"project_id": project.id}, start=False)
    await orchestrator.create_workflow("standard", {"project_id": "other-project"}, start=False)

    runs = await orchestrator.list_workflows_by_project(project.id)

    assert [w.id for w in runs] == [second, first]


@pytest.mark.asyncio
async def test_events_are_ordered(orchestrator, project, event_bus):
    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    workflow_events = [e for e in event_bus.recorded if e.type.value.startswith("workflow")]
    assert workflow_events[0].type == EventType.WORKFLOW_CREATED
    assert workflow_events[-1].type == EventType.WORKFLOW_COMPLETED
    assert workflow_events[-1].data["progress"] == 100
    progresses = [e.data["progress"] for e in workflow_events]
    assert progresses == sorted(progresses)
    assert EventType.JOB_ADDED in event_types(event_bus)


@pytest.mark.asyncio
async def test_character_aware_images_when_characters_found(orchestrator, project, provider, event_bus):
    provider.characters = CharacterExtraction(
        characters=[{"name": "Keeper", "description": "old sailor"}],
        scene_character_map={1: ["Keeper"], 3: ["Keeper"]},
    )

    workflow_id = await orchestrator.create_workflow("standard", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    added = [e for e in event_bus.recorded if e.type == EventType.JOB_ADDED]
    assert added[0].data["kind"] == "character-aware-image-generation"


@pytest.mark.asyncio
async def test_video_generation_step(orchestrator, project, project_store):
    workflow_id = await orchestrator.create_workflow(
        "standard", {"project_id": project.id, "generate_videos": True}
    )
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert [s.id for s in workflow.steps][-2:] == ["generate_sora_videos", "complete"]
    assert workflow.step("generate_sora_videos").result["succeeded"] == 4
    scenes = await project_store.get_scenes_by_project(project.id)
    assert all(scene.video_verified for scene in scenes)


@pytest.mark.asyncio
async def test_music_video_with_analysed_track(orchestrator, project, provider, project_store):
    provider.music = MusicAnalysis(duration_seconds=32.0)

    workflow_id = await orchestrator.create_workflow(
        "music-video", {"project_id": project.id, "music_audio_url": "https://tracks.test/song.mp3"}
    )
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    assert workflow.steps[1].id == "analyze_music_audio"
    scenes = await project_store.get_scenes_by_project(project.id)
    assert scenes[-1].end_seconds == pytest.approx(32.0, abs=0.005)
    assert provider.called("synthesize_narration") == 0


@pytest.mark.asyncio
async def test_music_video_without_track_uses_fixed_clips(orchestrator, project, project_store):
    workflow_id = await orchestrator.create_workflow("music-video", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    assert workflow.step("generate_scenes").result["timing"] == "fixed"
    scenes = await project_store.get_scenes_by_project(project.id)
    assert [(s.start_seconds, s.end_seconds) for s in scenes] == [(0, 8), (8, 16), (16, 24), (24, 32)]
    assert all(scene.clip_length == 8 for scene in scenes)


@pytest.mark.asyncio
async def test_animation_workflow(orchestrator, project, project_store, provider):
    workflow_id = await orchestrator.create_workflow("animation", {"project_id": project.id})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    assert [s.id for s in workflow.steps] == [
        "create", "parse_dialogue", "extract_characters", "generate_images", "generate_thumbnail", "complete",
    ]
    assert len(await project_store.get_scenes_by_project(project.id)) == 2
    assert provider.called("synthesize_narration") == 0


@pytest.mark.asyncio
async def test_resume_workflow_runs_only_missing_work(orchestrator, project_store, provider):
    project = project_store.add_project(
        id="project-lighthouse-0001",
        title="The Lighthouse",
        audio_url="https://storage.test/projects/project-lighthouse-0001/audio.mp3",
        audio_duration=30.0,
    )
    project_store.add_scenes(project.id, 3)
    project_store.scenes[f"{project.id}-scene-1"] = project_store.scenes[f"{project.id}-scene-1"].model_copy(
        update={"image_url": VALID_IMAGE_URL}
    )
    project_store.scenes[f"{project.id}-scene-2"] = project_store.scenes[f"{project.id}-scene-2"].model_copy(
        update={"image_url": "https://cdn.example.com/placeholder-generating-image-for-scene-2.png"}
    )

    workflow_id = await orchestrator.create_resume_workflow(project.id)
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.project_type == "resume"
    assert [s.id for s in workflow.steps] == [
        "create", "process_timestamps", "generate_images", "generate_thumbnail", "complete",
    ]
    assert workflow.status == "completed"
    image_calls = [call[1] for call in provider.calls if call[0] == "generate_scene_images"]
    assert sorted(number for numbers in image_calls for number in numbers) == [2, 3]
    scenes = await project_store.get_scenes_by_project(project.id)
    assert scenes[-1].end_seconds == pytest.approx(30.0, abs=0.005)


@pytest.mark.asyncio
async def test_resume_workflow_rejects_complete_project(orchestrator, project_store):
    project = project_store.add_project(
        id="project-lighthouse-0001",
        thumbnail_url="https://cdn.example.com/projects/project-lighthouse-0001/thumbnail.png",
    )
    project_store.add_scenes(project.id, 1, image_url=VALID_IMAGE_URL, start_seconds=0.0, end_seconds=10.0)

    with pytest.raises(ValidationError, match="Project appears to be complete"):
        await orchestrator.create_resume_workflow(project.id)
    with pytest.raises(ValidationError):
        await orchestrator.create_resume_workflow("no-such-project")


@pytest.mark.asyncio
async def test_thumbnail_workflow(orchestrator, project, project_store, provider):
    workflow_id = await orchestrator.create_thumbnail_workflow(project.id, {"title": "Storm Over The Harbour"})
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "completed"
    assert [s.id for s in workflow.steps] == ["create", "generate_thumbnail", "complete"]
    assert ("generate_thumbnail", "Storm Over The Harbour") in provider.calls
    assert project_store.projects[project.id].status == "draft"
    assert project_store.projects[project.id].thumbnail_url is not None


@pytest.mark.asyncio
async def test_thumbnail_workflow_fails_on_thumbnail_error(orchestrator, project, provider):
    provider.thumbnail_errors = [RuntimeError("thumbnail provider down")]

    workflow_id = await orchestrator.create_thumbnail_workflow(project.id)
    workflow = await orchestrator.wait_for_workflow(workflow_id, timeout=5)

    assert workflow.status == "failed"
    assert workflow.failed_step_id == "generate_thumbnail"


def test_workflow_progress_counts_running_step(project):
    from workflow_engine.step_lists import build_steps
    from shared.models.workflow import Workflow

    steps = build_steps("standard")
    steps[0].status = "completed"
    steps[1].status = "processing"
    steps[1].progress = 50
    workflow = Workflow(id="w1", project_id=project.id, steps=steps, current_step_index=1)

    assert workflow_progress(workflow) == int(1.5 / 8 * 100)
