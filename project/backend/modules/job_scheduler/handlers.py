"""
Per-kind job item handlers.

Each handler generates one scene's asset through the provider, stores it
(verified upload when the provider returns bytes) and returns its URL.
"""

from typing import Any, Dict, List, Optional

from shared.errors import ProviderError, ValidationError
from shared.interfaces import GenerationProvider, ProjectStore
from shared.logging import get_logger
from shared.models.job import CharacterImagePayload, ImageGenerationPayload, Job, JobItem, JobKind
from shared.models.scene import Scene
from shared.retry import call_with_retry
from modules.job_scheduler.processors import ItemHandler
from modules.scene_assets.uploader import SceneAssetUploader

logger = get_logger("job_scheduler")


def style_params_for(payload: Any, scene_number: Optional[int] = None) -> Dict[str, Any]:
    """Build the provider style parameters for a job payload."""
    params: Dict[str, Any] = {
        "style": payload.style,
        "custom_style_prompt": payload.custom_style_prompt,
    }
    if isinstance(payload, ImageGenerationPayload):
        params["maintain_continuity"] = payload.maintain_continuity
    if isinstance(payload, CharacterImagePayload):
        names = set(payload.scene_character_map.get(scene_number, []))
        params["characters"] = [c.model_dump() for c in payload.characters if c.name in names]
    return params


class _SceneHandler:
    def __init__(self, provider: GenerationProvider, store: ProjectStore, uploader: SceneAssetUploader):
        self.provider = provider
        self.store = store
        self.uploader = uploader

    async def load_scene(self, scene_id: str) -> Scene:
        scene = await call_with_retry(
            lambda: self.store.get_scene(scene_id),
            description=f"load scene {scene_id}",
        )
        if scene is None:
            raise ValidationError(f"Scene {scene_id} not found")
        return scene


class SceneImageHandler(_SceneHandler):
    """Generates one scene image; also serves character-aware jobs."""

    def reference_images(self, job: Job, item: JobItem) -> List[str]:
        """
        Reference images for a scene.

        Character-aware jobs reuse images already generated in this job for
        earlier scenes that share a character with this one.
        """
        payload = job.payload
        references: List[str] = []
        if isinstance(payload, CharacterImagePayload):
            wanted = set(payload.scene_character_map.get(item.scene_number, []))
            for earlier in job.items:
                if earlier.scene_number >= item.scene_number:
                    continue
                shared = wanted & set(payload.scene_character_map.get(earlier.scene_number, []))
                url = job.results.get(earlier.scene_id)
                if shared and url:
                    references.append(url)
        elif isinstance(payload, ImageGenerationPayload) and not payload.maintain_continuity:
            return references
        if payload.reference_image_url:
            references.insert(0, payload.reference_image_url)
        return references

    async def __call__(self, job: Job, item: JobItem) -> Optional[str]:
        scene = await self.load_scene(item.scene_id)
        references = self.reference_images(job, item)
        results = await self.provider.generate_scene_images(
            [scene],
            style_params_for(job.payload, item.scene_number),
            references or None,
        )
        result = next((r for r in results if r.scene_id == item.scene_id), None)
        if result is None or not result.succeeded:
            raise ProviderError(
                (result.error if result else None) or "No image returned",
                provider="image",
                scene_id=item.scene_id,
            )

        if result.image_bytes:
            stored = await self.uploader.upload_scene_image(
                scene.id,
                scene.project_id,
                scene.scene_number,
                result.image_bytes,
                force_regenerate=bool(item.data.get("force_regenerate", False)),
            )
            return stored.url

        await call_with_retry(
            lambda: self.store.update_scene(scene.id, {"image_url": result.image_url, "image_verified": False}),
            description=f"record image for scene {scene.id}",
        )
        return result.image_url


class SceneVideoHandler(_SceneHandler):
    """Turns a scene's image into a video clip."""

    async def __call__(self, job: Job, item: JobItem) -> Optional[str]:
        scene = await self.load_scene(item.scene_id)
        image_url = item.data.get("image_url") or scene.image_url
        if not image_url:
            raise ProviderError("Scene has no image to animate", provider="video", scene_id=item.scene_id)

        result = await self.provider.generate_scene_video(scene, image_url)
        if not result.succeeded:
            raise ProviderError(result.error or "No video returned", provider="video", scene_id=item.scene_id)

        if result.video_bytes:
            stored = await self.uploader.upload_scene_video(
                scene.id,
                scene.project_id,
                scene.scene_number,
                result.video_bytes,
                force_regenerate=bool(item.data.get("force_regenerate", False)),
            )
            return stored.url

        await call_with_retry(
            lambda: self.store.update_scene(scene.id, {"video_url": result.video_url, "video_verified": False}),
            description=f"record video for scene {scene.id}",
        )
        return result.video_url


def build_handlers(
    provider: GenerationProvider,
    store: ProjectStore,
    uploader: SceneAssetUploader,
) -> Dict[JobKind, ItemHandler]:
    """Handler for every job kind."""
    image_handler = SceneImageHandler(provider, store, uploader)
    return {
        JobKind.IMAGE_GENERATION: image_handler,
        JobKind.CHARACTER_IMAGE_GENERATION: image_handler,
        JobKind.VIDEO_GENERATION: SceneVideoHandler(provider, store, uploader),
    }
