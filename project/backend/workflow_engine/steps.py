"""
Workflow step executors.

Each executor takes a StepContext and returns the step's result payload.
Steps that fan out per-scene work submit a job and poll it until it is
terminal. Soft steps turn any failure except CriticalIntegrityError into a
skipped result.
"""

import io
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import librosa

from shared.config import settings
from shared.errors import CriticalIntegrityError, ProviderError, ValidationError
from shared.interfaces import GenerationProvider, MusicAnalysis, NarrationResult, ObjectStorage, ProjectStore
from shared.logging import get_logger
from shared.models.job import (
    CharacterImagePayload,
    CharacterProfile,
    ImageGenerationPayload,
    Job,
    JobItem,
    JobProgress,
    VideoGenerationPayload,
)
from shared.models.scene import Project, Scene, SceneDraft, SceneInterval
from shared.models.workflow import Workflow, WorkflowStep
from shared.retry import call_with_retry
from modules.job_scheduler.scheduler import JobScheduler
from modules.scene_assets.uploader import SceneAssetUploader
from modules.timeline_allocator import (
    allocate_fixed_clips,
    allocate_weighted,
    reconcile_timestamps,
    validate_partition,
)
from modules.timeline_allocator.config import DEFAULT_CLIP_SECONDS
from workflow_engine.job_monitor import PollConfig, await_job_completion, job_step_progress

logger = get_logger("workflow_engine")

PLACEHOLDER_MARKERS = ("placeholder", "generating", "failed", "error")
MIN_ASSET_URL_LENGTH = 50

CONTENT_REJECTION_MARKERS = ("safety", "content policy", "moderation", "rejected")
GENERIC_THUMBNAIL_TITLE = "An Illustrated Story"


@dataclass
class StepServices:
    """Collaborators shared by every step executor."""

    provider: GenerationProvider
    store: ProjectStore
    storage: ObjectStorage
    scheduler: JobScheduler
    uploader: SceneAssetUploader
    image_poll: PollConfig = field(default_factory=PollConfig.for_images)
    video_poll: PollConfig = field(default_factory=PollConfig.for_videos)


@dataclass
class StepContext:
    """What a step executor sees: its workflow, services and a progress hook."""

    workflow: Workflow
    services: StepServices
    report_progress: Callable[[int], Awaitable[None]]

    @property
    def project_id(self) -> str:
        return self.workflow.project_id

    @property
    def params(self) -> Dict[str, Any]:
        return self.workflow.params

    async def report_job_progress(self, progress: JobProgress) -> None:
        await self.report_progress(job_step_progress(progress))


StepExecutor = Callable[[StepContext], Awaitable[Any]]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def has_valid_asset(url: Optional[str]) -> bool:
    """True for a URL that points at a real generated asset."""
    if not url:
        return False
    lowered = url.lower()
    if any(marker in lowered for marker in PLACEHOLDER_MARKERS):
        return False
    return len(url) >= MIN_ASSET_URL_LENGTH


def is_content_rejection(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in CONTENT_REJECTION_MARKERS)


def style_params(project: Project, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    overrides = overrides or {}
    return {
        "style": overrides.get("style") or project.style or settings.default_style,
        "custom_style_prompt": overrides.get("custom_style_prompt") or project.custom_style_prompt,
    }


async def load_project(ctx: StepContext) -> Project:
    project = await call_with_retry(
        lambda: ctx.services.store.get_project(ctx.project_id),
        description=f"load project {ctx.project_id}",
    )
    if project is None:
        raise ValidationError(f"Project {ctx.project_id} not found", details={"project_id": ctx.project_id})
    return project


async def load_scenes(ctx: StepContext) -> List[Scene]:
    scenes = await call_with_retry(
        lambda: ctx.services.store.get_scenes_by_project(ctx.project_id),
        description=f"load scenes for project {ctx.project_id}",
    )
    return sorted(scenes, key=lambda scene: scene.scene_number)


async def require_scenes(ctx: StepContext) -> List[Scene]:
    scenes = await load_scenes(ctx)
    if not scenes:
        raise ValidationError(f"Project {ctx.project_id} has no scenes", details={"project_id": ctx.project_id})
    return scenes


async def update_project(ctx: StepContext, patch: Dict[str, Any]) -> None:
    await call_with_retry(
        lambda: ctx.services.store.update_project(ctx.project_id, patch),
        description=f"update project {ctx.project_id}",
    )


async def update_scene(ctx: StepContext, scene_id: str, patch: Dict[str, Any]) -> None:
    await call_with_retry(
        lambda: ctx.services.store.update_scene(scene_id, patch),
        description=f"update scene {scene_id}",
    )


async def create_scenes(ctx: StepContext, drafts: Sequence[SceneDraft]) -> List[Scene]:
    if not drafts:
        raise ValidationError("Scene breakdown returned no scenes")
    numbers = [draft.scene_number for draft in drafts]
    if len(set(numbers)) != len(numbers):
        raise ValidationError("Scene breakdown returned duplicate scene numbers", details={"scene_numbers": numbers})

    created = []
    for draft in sorted(drafts, key=lambda d: d.scene_number):
        scene = await call_with_retry(
            lambda: ctx.services.store.create_scene(ctx.project_id, draft),
            description=f"create scene {draft.scene_number}",
        )
        created.append(scene)
    logger.info(f"Created {len(created)} scenes", extra={"project_id": ctx.project_id, "scene_count": len(created)})
    return created


async def store_intervals(ctx: StepContext, scenes: Sequence[Scene], intervals: Sequence[SceneInterval]) -> None:
    by_number = {interval.scene_number: interval for interval in intervals}
    for scene in scenes:
        interval = by_number[scene.scene_number]
        await update_scene(ctx, scene.id, {
            "start_seconds": round(interval.start_seconds, 3),
            "end_seconds": round(interval.end_seconds, 3),
        })


async def time_scenes(
    ctx: StepContext,
    project: Project,
    scenes: Sequence[Scene],
    total_duration: float,
) -> Tuple[List[SceneInterval], str]:
    """
    Partition the narration across scenes.

    Provider timestamp guesses are reconciled when there are any; otherwise,
    or when the provider fails, scenes are weighted by script length.
    """
    timestamps = []
    if project.audio_url:
        try:
            timestamps = await ctx.services.provider.estimate_scene_timestamps(
                project.audio_url, list(scenes), total_duration
            )
        except Exception as e:
            logger.warning(
                "Scene timestamp estimation failed, using weighted allocation",
                exc_info=e,
                extra={"project_id": project.id}
            )

    if timestamps:
        intervals = reconcile_timestamps(scenes, timestamps, total_duration)
        mode = "reconciled"
    else:
        intervals = allocate_weighted(scenes, total_duration)
        mode = "weighted"
    validate_partition(intervals, total_duration, expected_count=len(scenes))
    return intervals, mode


def narration_duration(project: Project, step_id: str) -> float:
    if not project.audio_duration or project.audio_duration <= 0:
        raise CriticalIntegrityError(
            "Narration duration is unknown; scenes cannot be timed",
            step_id=step_id,
            details={"project_id": project.id}
        )
    return project.audio_duration


def image_payload_for(project: Project, params: Dict[str, Any]):
    """Character-aware payload when the project has characters, else the standard one."""
    style = style_params(project, params)
    characters = [CharacterProfile.model_validate(c) for c in project.characters if c.get("name")]
    if characters:
        return CharacterImagePayload(
            style=style["style"],
            custom_style_prompt=style["custom_style_prompt"],
            reference_image_url=project.reference_image_url,
            characters=characters,
            scene_character_map=project.scene_character_map,
        )
    return ImageGenerationPayload(
        style=style["style"],
        custom_style_prompt=style["custom_style_prompt"],
        maintain_continuity=project.maintain_continuity,
        reference_image_url=project.reference_image_url,
    )


def job_outcome(job: Job, label: str) -> Dict[str, Any]:
    """Step result for a terminal job; a failed job fails the step."""
    if job.status == "failed":
        raise ProviderError(f"{label.capitalize()} job {job.id} failed: {job.error}", provider=label)
    failed = sorted(job.item_errors)
    return {
        "jobId": job.id,
        "requested": job.progress.total,
        "succeeded": job.progress.total - len(failed),
        "failed": len(failed),
        "failedScenes": failed,
    }


# ----------------------------------------------------------------------
# Executors
# ----------------------------------------------------------------------

async def run_create(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    return {"projectId": project.id}


async def verify_narration(ctx: StepContext, narration: NarrationResult) -> bytes:
    """
    Hard gate: the narration file must exist in storage and be big enough.

    Raises:
        CriticalIntegrityError: If the file is missing, unreadable or too small
    """
    if not narration.storage_key:
        raise CriticalIntegrityError("Narration audio has no storage key", step_id="generate_audio")
    try:
        data = await ctx.services.storage.download_to_buffer(narration.storage_key)
    except Exception as e:
        raise CriticalIntegrityError(
            f"Narration audio missing from storage: {narration.storage_key}",
            step_id="generate_audio",
            details={"storage_key": narration.storage_key, "error": str(e)}
        ) from e

    if len(data) < settings.min_audio_bytes:
        raise CriticalIntegrityError(
            f"Narration audio too small: {len(data)} bytes (minimum {settings.min_audio_bytes})",
            step_id="generate_audio",
            details={"storage_key": narration.storage_key, "byte_size": len(data)}
        )
    return data


def measure_audio_duration(data: bytes) -> Optional[float]:
    """Duration in seconds decoded from an audio buffer, or None if it cannot be decoded."""
    try:
        audio, sr = librosa.load(io.BytesIO(data), sr=None)
    except Exception as e:
        logger.warning(f"Could not decode narration audio to measure it: {e}")
        return None
    if not sr or len(audio) == 0:
        return None
    return len(audio) / sr


async def run_generate_audio(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    if not project.content.strip():
        raise ValidationError("Project has no script content to narrate")

    voice_params = {
        "voice": ctx.params.get("voice") or project.voice or settings.default_voice,
        "model": ctx.params.get("audio_model") or project.audio_model or settings.default_audio_model,
    }
    await ctx.report_progress(10)
    narration = await ctx.services.provider.synthesize_narration(project.content, voice_params)
    await ctx.report_progress(60)

    data = await verify_narration(ctx, narration)
    duration = narration.duration_seconds
    measured = measure_audio_duration(data)
    if measured is not None and abs(measured - duration) > settings.audio_duration_tolerance_seconds:
        logger.warning(
            f"Correcting narration duration from {duration:.2f}s to measured {measured:.2f}s",
            extra={"project_id": project.id, "drift_seconds": round(abs(measured - duration), 3)}
        )
        duration = measured
    if duration <= 0:
        raise CriticalIntegrityError("Narration audio has no measurable duration", step_id="generate_audio")

    if narration.byte_size and narration.byte_size != len(data):
        logger.warning(
            f"Narration size mismatch: provider reported {narration.byte_size} bytes, storage has {len(data)}",
            extra={"project_id": project.id}
        )
    await update_project(ctx, {
        "audio_url": narration.audio_url,
        "audio_storage_key": narration.storage_key,
        "audio_duration": duration,
        "voice": voice_params["voice"],
        "audio_model": voice_params["model"],
    })
    return {
        "audioUrl": narration.audio_url,
        "durationSeconds": duration,
        "byteSize": len(data),
    }


async def run_analyze_music_audio(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    audio_url = ctx.params.get("music_audio_url") or project.music_audio_url
    if not audio_url:
        raise ValidationError("No music track to analyze")

    analysis = await ctx.services.provider.analyze_music_audio(audio_url, project.content)
    if analysis.duration_seconds <= 0:
        raise CriticalIntegrityError("Music track has no measurable duration", step_id="analyze_music_audio")

    await update_project(ctx, {"music_audio_url": audio_url, "audio_duration": analysis.duration_seconds})
    return analysis.model_dump(mode="json")


def music_analysis_for(workflow: Workflow) -> Optional[MusicAnalysis]:
    step = workflow.step("analyze_music_audio")
    if step is None or step.status != "completed" or not isinstance(step.result, dict):
        return None
    return MusicAnalysis.model_validate(step.result)


async def run_generate_scenes(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    scenes = await load_scenes(ctx)
    if scenes and all(scene.has_interval for scene in scenes):
        logger.info("Reusing existing timed scenes", extra={"project_id": project.id, "scene_count": len(scenes)})
        return {"sceneCount": len(scenes), "reused": True}

    music_video = ctx.workflow.project_type == "music-video"
    total = None if music_video else narration_duration(project, "generate_scenes")

    if not scenes:
        await ctx.report_progress(10)
        drafts = await ctx.services.provider.breakdown_scenes(project.content, style_params(project, ctx.params))
        scenes = await create_scenes(ctx, drafts)
    await ctx.report_progress(50)

    if music_video:
        analysis = music_analysis_for(ctx.workflow)
        if analysis is None:
            intervals = allocate_fixed_clips([s.scene_number for s in scenes], DEFAULT_CLIP_SECONDS)
            for scene in scenes:
                await update_scene(ctx, scene.id, {"clip_length": DEFAULT_CLIP_SECONDS})
            total = intervals[-1].end_seconds
            await update_project(ctx, {"audio_duration": total})
            mode = "fixed"
        else:
            total = analysis.duration_seconds
            intervals = reconcile_timestamps(scenes, analysis.timings, total)
            validate_partition(intervals, total, expected_count=len(scenes))
            mode = "music"
    else:
        intervals, mode = await time_scenes(ctx, project, scenes, total)

    await store_intervals(ctx, scenes, intervals)
    return {"sceneCount": len(scenes), "totalDuration": total, "timing": mode}


async def run_process_timestamps(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    scenes = await require_scenes(ctx)
    total = narration_duration(project, "process_timestamps")
    intervals, mode = await time_scenes(ctx, project, scenes, total)
    await store_intervals(ctx, scenes, intervals)
    return {"updatedScenes": len(scenes), "timing": mode}


async def run_parse_dialogue(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    scenes = await load_scenes(ctx)
    if not scenes:
        drafts = await ctx.services.provider.parse_dialogue(project.content, project.animation_settings)
        scenes = await create_scenes(ctx, drafts)

    clip_seconds = project.animation_settings.get("clip_length") or DEFAULT_CLIP_SECONDS
    intervals = allocate_fixed_clips([scene.scene_number for scene in scenes], clip_seconds)
    await store_intervals(ctx, scenes, intervals)
    await update_project(ctx, {"audio_duration": intervals[-1].end_seconds})
    return {"sceneCount": len(scenes), "totalDuration": intervals[-1].end_seconds}


async def run_extract_characters(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    scenes = await require_scenes(ctx)
    extraction = await ctx.services.provider.extract_characters(project, scenes)
    await update_project(ctx, {
        "characters": extraction.characters,
        "scene_character_map": extraction.scene_character_map,
    })
    return {
        "characterCount": len(extraction.characters),
        "scenesWithCharacters": len(extraction.scene_character_map),
    }


async def run_generate_images(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    scenes = await require_scenes(ctx)
    force = bool(ctx.params.get("force_regenerate"))
    targets = scenes if force else [scene for scene in scenes if not has_valid_asset(scene.image_url)]
    if not targets:
        logger.info("Every scene already has an image", extra={"project_id": project.id})
        return {"requested": 0, "succeeded": 0, "failed": 0, "failedScenes": [], "existing": len(scenes)}

    scheduler = ctx.services.scheduler
    payload = image_payload_for(project, ctx.params)
    job_id = await scheduler.enqueue_scenes(payload, project.id, targets, force_regenerate=force)
    logger.info(
        f"Submitted {payload.kind} job for {len(targets)} of {len(scenes)} scenes",
        extra={"project_id": project.id, "job_id": job_id}
    )
    await ctx.report_progress(5)
    job = await await_job_completion(scheduler, job_id, ctx.services.image_poll, ctx.report_job_progress)
    return job_outcome(job, "image")


async def run_generate_thumbnail(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    config = ctx.params.get("thumbnail_config") or {}
    title = config.get("title") or project.title
    params = style_params(project, {**ctx.params, **config})
    provider = ctx.services.provider

    try:
        result = await provider.generate_thumbnail(title, project.content, params)
    except Exception as e:
        if not is_content_rejection(e):
            raise
        logger.warning(
            "Thumbnail rejected by content filter, retrying with a generic title",
            extra={"project_id": project.id, "error": str(e)}
        )
        result = await provider.generate_thumbnail(GENERIC_THUMBNAIL_TITLE, project.content, params)

    if result.image_bytes:
        stored = await ctx.services.uploader.upload_thumbnail(project.id, result.image_bytes)
        url = stored.url
    elif result.image_url:
        url = result.image_url
    else:
        raise ProviderError("Thumbnail generation returned no image", provider="thumbnail")

    await update_project(ctx, {"thumbnail_url": url})
    return {"thumbnailUrl": url}


async def run_generate_sora_prompts(ctx: StepContext) -> Dict[str, Any]:
    project = await load_project(ctx)
    scenes = await require_scenes(ctx)
    prompts = await ctx.services.provider.generate_video_prompts(scenes, style_params(project, ctx.params))

    updated = 0
    for scene in scenes:
        prompt = prompts.get(scene.id)
        if prompt:
            await update_scene(ctx, scene.id, {"video_prompt": prompt})
            updated += 1
    return {"promptCount": updated}


async def run_generate_sora_videos(ctx: StepContext) -> Dict[str, Any]:
    scenes = await require_scenes(ctx)
    force = bool(ctx.params.get("force_regenerate"))
    targets = [
        scene for scene in scenes
        if has_valid_asset(scene.image_url) and (force or not has_valid_asset(scene.video_url))
    ]
    if not targets:
        return {"skipped": True, "reason": "No scene images to animate"}

    items = [
        JobItem(
            scene_id=scene.id,
            scene_number=scene.scene_number,
            data={"image_url": scene.image_url, "force_regenerate": force},
        )
        for scene in targets
    ]
    scheduler = ctx.services.scheduler
    job_id = await scheduler.enqueue(VideoGenerationPayload(), ctx.project_id, items)
    await ctx.report_progress(5)
    job = await await_job_completion(scheduler, job_id, ctx.services.video_poll, ctx.report_job_progress)
    return job_outcome(job, "video")


async def run_complete(ctx: StepContext) -> Dict[str, Any]:
    if ctx.workflow.project_type != "thumbnail":
        await update_project(ctx, {"status": "completed"})
    return {"projectId": ctx.project_id, "status": "completed"}


STEP_EXECUTORS: Dict[str, StepExecutor] = {
    "create": run_create,
    "generate_audio": run_generate_audio,
    "analyze_music_audio": run_analyze_music_audio,
    "parse_dialogue": run_parse_dialogue,
    "generate_scenes": run_generate_scenes,
    "process_timestamps": run_process_timestamps,
    "extract_characters": run_extract_characters,
    "generate_images": run_generate_images,
    "generate_thumbnail": run_generate_thumbnail,
    "generate_sora_prompts": run_generate_sora_prompts,
    "generate_sora_videos": run_generate_sora_videos,
    "complete": run_complete,
}


async def run_step(step: WorkflowStep, ctx: StepContext) -> Any:
    """
    Run a step's executor.

    Soft steps return {"skipped": True, "reason": ...} instead of raising,
    except for CriticalIntegrityError which always propagates.
    """
    executor = STEP_EXECUTORS.get(step.id)
    if executor is None:
        raise ValidationError(f"No executor for step {step.id}")
    if not step.soft:
        return await executor(ctx)

    try:
        return await executor(ctx)
    except CriticalIntegrityError:
        raise
    except Exception as e:
        logger.warning(
            f"Soft step {step.id} failed, continuing without it",
            exc_info=e,
            extra={"step_id": step.id, "project_id": ctx.project_id}
        )
        return {"skipped": True, "reason": str(e) or e.__class__.__name__}
