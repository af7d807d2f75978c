"""
Project and scene data models.

Defines Project, Scene, SceneDraft, SceneTimestamp, SceneInterval and
StorageResult models.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, model_validator


class Project(BaseModel):
    """Project record as exposed by the project store."""

    id: str
    title: str
    content: str
    project_type: str = "standard"
    style: str = "cinematic"
    custom_style_prompt: Optional[str] = None
    maintain_continuity: bool = True
    reference_image_url: Optional[str] = None
    voice: Optional[str] = None
    audio_model: Optional[str] = None
    audio_url: Optional[str] = None
    audio_storage_key: Optional[str] = None
    audio_duration: Optional[float] = Field(default=None, description="Narration duration in seconds")
    music_audio_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    characters: List[Dict[str, Any]] = Field(default_factory=list)
    scene_character_map: Dict[int, List[str]] = Field(default_factory=dict)
    animation_settings: Dict[str, Any] = Field(default_factory=dict)
    status: str = "draft"


class Scene(BaseModel):
    """Scene record as exposed by the project store."""

    id: str
    project_id: str
    scene_number: int = Field(ge=1)
    title: Optional[str] = None
    script_excerpt: str = ""
    image_prompt: Optional[str] = None
    video_prompt: Optional[str] = None
    clip_length: Optional[int] = None
    start_seconds: Optional[float] = None
    end_seconds: Optional[float] = None

    image_url: Optional[str] = None
    image_storage_key: Optional[str] = None
    image_checksum: Optional[str] = None
    image_byte_length: Optional[int] = None
    image_verified: bool = False

    video_url: Optional[str] = None
    video_storage_key: Optional[str] = None
    video_checksum: Optional[str] = None
    video_byte_length: Optional[int] = None
    video_verified: bool = False

    @property
    def word_count(self) -> int:
        return len(self.script_excerpt.split())

    @property
    def has_interval(self) -> bool:
        return self.start_seconds is not None and self.end_seconds is not None


class SceneDraft(BaseModel):
    """Scene proposed by a provider before it is stored."""

    scene_number: int = Field(ge=1)
    title: Optional[str] = None
    script_excerpt: str = ""
    image_prompt: Optional[str] = None
    clip_length: Optional[int] = None
    start_seconds: Optional[float] = None
    end_seconds: Optional[float] = None


class SceneTimestamp(BaseModel):
    """
    Externally supplied start/end guess for a scene.

    Either bound may be missing or non-finite; the reconciler discards
    unusable entries.
    """

    scene_number: int
    start_seconds: Optional[float] = None
    end_seconds: Optional[float] = None


class SceneInterval(BaseModel):
    """Time range in seconds assigned to one scene."""

    scene_number: int
    start_seconds: float = Field(ge=0)
    end_seconds: float = Field(ge=0)

    @model_validator(mode="after")
    def validate_order(self) -> "SceneInterval":
        if self.end_seconds < self.start_seconds:
            raise ValueError(
                f"Scene {self.scene_number} ends ({self.end_seconds}) before it starts ({self.start_seconds})"
            )
        return self

    @property
    def duration(self) -> float:
        return self.end_seconds - self.start_seconds


class StorageResult(BaseModel):
    """Outcome of a checksum-verified asset upload."""

    url: str
    storage_key: str
    checksum: str
    byte_length: int
    verified: bool = True
