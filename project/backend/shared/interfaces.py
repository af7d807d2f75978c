"""
External collaborator interfaces.

The engine consumes these; generation providers, the project store and
object storage are implemented elsewhere.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from pydantic import BaseModel, Field

from shared.models.scene import Project, Scene, SceneDraft, SceneTimestamp


class NarrationResult(BaseModel):
    """Synthesized narration audio."""

    audio_url: str
    storage_key: Optional[str] = Field(default=None, description="Object storage key of the audio file")
    duration_seconds: float = Field(ge=0)
    byte_size: int = Field(default=0, ge=0)


class SceneImageResult(BaseModel):
    """Per-scene outcome of an image generation call."""

    scene_id: str
    image_url: Optional[str] = None
    image_bytes: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and (self.image_url is not None or self.image_bytes is not None)


class SceneVideoResult(BaseModel):
    """Outcome of a single image-to-video call."""

    scene_id: str
    video_url: Optional[str] = None
    video_bytes: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and (self.video_url is not None or self.video_bytes is not None)


class ThumbnailResult(BaseModel):
    """Generated project thumbnail."""

    image_url: Optional[str] = None
    image_bytes: Optional[bytes] = None


class CharacterExtraction(BaseModel):
    """Characters found in a script and where they appear."""

    characters: List[Dict[str, Any]] = Field(default_factory=list)
    scene_character_map: Dict[int, List[str]] = Field(default_factory=dict)


class MusicAnalysis(BaseModel):
    """Measured music track duration plus suggested scene timings."""

    duration_seconds: float = Field(ge=0)
    timings: List[SceneTimestamp] = Field(default_factory=list)


@runtime_checkable
class GenerationProvider(Protocol):
    """AI generation calls used by workflow steps and job handlers."""

    async def synthesize_narration(self, text: str, voice_params: Dict[str, Any]) -> NarrationResult:
        ...

    async def generate_scene_images(
        self,
        scenes: List[Scene],
        style_params: Dict[str, Any],
        reference_images: Optional[List[str]] = None,
    ) -> List[SceneImageResult]:
        ...

    async def generate_scene_video(self, scene: Scene, image_url: str) -> SceneVideoResult:
        ...

    async def breakdown_scenes(self, content: str, style_params: Dict[str, Any]) -> List[SceneDraft]:
        ...

    async def estimate_scene_timestamps(
        self,
        audio_url: str,
        scenes: List[Scene],
        total_duration: float,
    ) -> List[SceneTimestamp]:
        ...

    async def extract_characters(self, project: Project, scenes: List[Scene]) -> CharacterExtraction:
        ...

    async def generate_thumbnail(self, title: str, content: str, style_params: Dict[str, Any]) -> ThumbnailResult:
        ...

    async def generate_video_prompts(self, scenes: List[Scene], style_params: Dict[str, Any]) -> Dict[str, str]:
        ...

    async def parse_dialogue(self, content: str, animation_settings: Dict[str, Any]) -> List[SceneDraft]:
        ...

    async def analyze_music_audio(self, audio_url: str, content: str) -> MusicAnalysis:
        ...


@runtime_checkable
class ProjectStore(Protocol):
    """Persistent project, scene and workflow record storage."""

    async def get_project(self, project_id: str) -> Optional[Project]:
        ...

    async def update_project(self, project_id: str, patch: Dict[str, Any]) -> None:
        ...

    async def get_scenes_by_project(self, project_id: str) -> List[Scene]:
        ...

    async def get_scene(self, scene_id: str) -> Optional[Scene]:
        ...

    async def create_scene(self, project_id: str, draft: SceneDraft) -> Scene:
        ...

    async def update_scene(self, scene_id: str, patch: Dict[str, Any]) -> None:
        ...

    async def create_workflow_record(self, record: Dict[str, Any]) -> None:
        ...

    async def update_workflow_record(self, workflow_id: str, record: Dict[str, Any]) -> None:
        ...

    async def load_workflow_record(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def list_workflow_records(self) -> List[Dict[str, Any]]:
        ...


@runtime_checkable
class ObjectStorage(Protocol):
    """Blob storage for generated assets."""

    async def upload_buffer(self, data: bytes, key: str, content_type: Optional[str] = None) -> str:
        ...

    async def download_to_buffer(self, key: str) -> bytes:
        ...
