"""
Data models for the generation pipeline engine.

This module exports all Pydantic models used across pipeline modules.
"""

from .workflow import Workflow, WorkflowStep, StepStatus, WorkflowStatus, ProjectType
from .job import (
    Job,
    JobItem,
    JobKind,
    JobPayload,
    JobProgress,
    JobStatus,
    ImageGenerationPayload,
    CharacterImagePayload,
    CharacterProfile,
    VideoGenerationPayload,
    CANCELLED_MESSAGE,
)
from .scene import (
    Project,
    Scene,
    SceneDraft,
    SceneTimestamp,
    SceneInterval,
    StorageResult,
)

__all__ = [
    # Workflow models
    "Workflow",
    "WorkflowStep",
    "StepStatus",
    "WorkflowStatus",
    "ProjectType",
    # Job models
    "Job",
    "JobItem",
    "JobKind",
    "JobPayload",
    "JobProgress",
    "JobStatus",
    "ImageGenerationPayload",
    "CharacterImagePayload",
    "CharacterProfile",
    "VideoGenerationPayload",
    "CANCELLED_MESSAGE",
    # Scene models
    "Project",
    "Scene",
    "SceneDraft",
    "SceneTimestamp",
    "SceneInterval",
    "StorageResult",
]
