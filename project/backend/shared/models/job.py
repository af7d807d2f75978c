"""
Job-related data models.

Defines Job, its work items and the tagged payload union that selects how a
job is processed.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_serializer

JobStatus = Literal["pending", "processing", "completed", "failed"]

CANCELLED_MESSAGE = "Cancelled by user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    """Closed set of job kinds."""

    IMAGE_GENERATION = "image-generation"
    CHARACTER_IMAGE_GENERATION = "character-aware-image-generation"
    VIDEO_GENERATION = "video-generation"


class CharacterProfile(BaseModel):
    """Visual description of a recurring character."""

    name: str
    description: str = ""
    reference_image_url: Optional[str] = None


class ImageGenerationPayload(BaseModel):
    """Independent per-scene image generation, processed in batches."""

    kind: Literal["image-generation"] = "image-generation"
    style: str
    custom_style_prompt: Optional[str] = None
    maintain_continuity: bool = True
    reference_image_url: Optional[str] = None


class CharacterImagePayload(BaseModel):
    """Character-consistent image generation, processed in scene order."""

    kind: Literal["character-aware-image-generation"] = "character-aware-image-generation"
    style: str
    custom_style_prompt: Optional[str] = None
    reference_image_url: Optional[str] = None
    characters: List[CharacterProfile] = Field(default_factory=list)
    scene_character_map: Dict[int, List[str]] = Field(
        default_factory=dict,
        description="Scene number -> names of characters appearing in it"
    )


class VideoGenerationPayload(BaseModel):
    """Image-to-video generation per scene, processed in batches."""

    kind: Literal["video-generation"] = "video-generation"


JobPayload = Annotated[
    Union[ImageGenerationPayload, CharacterImagePayload, VideoGenerationPayload],
    Field(discriminator="kind"),
]


class JobItem(BaseModel):
    """One unit of work, always tied to a scene."""

    model_config = ConfigDict(frozen=True)

    scene_id: str
    scene_number: int
    data: Dict[str, Any] = Field(default_factory=dict)


class JobProgress(BaseModel):
    """Processed/total counters. Failed items count as processed."""

    completed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class Job(BaseModel):
    """A scheduled batch of per-scene generation work."""

    id: str
    project_id: str
    payload: JobPayload
    items: Tuple[JobItem, ...]
    status: JobStatus = "pending"
    progress: JobProgress = Field(default_factory=JobProgress)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    results: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Scene id -> generated asset URL, or None on failure"
    )
    item_errors: Dict[str, str] = Field(default_factory=dict)

    @property
    def kind(self) -> JobKind:
        return JobKind(self.payload.kind)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    @property
    def was_cancelled(self) -> bool:
        return self.status == "failed" and self.error == CANCELLED_MESSAGE

    @field_serializer("created_at", "completed_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None
