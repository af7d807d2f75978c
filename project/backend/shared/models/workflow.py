"""
Workflow data models.

Defines Workflow and WorkflowStep for tracking a multi-step pipeline run.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_serializer

StepStatus = Literal["pending", "processing", "completed", "failed"]
WorkflowStatus = Literal["pending", "processing", "completed", "failed"]
ProjectType = Literal["standard", "music-video", "animation", "resume", "thumbnail"]

TERMINAL_STATUSES = ("completed", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStep(BaseModel):
    """One named, ordered phase of a workflow."""

    id: str = Field(description="Stable step key, e.g. 'generate_audio'")
    display_name: str
    status: StepStatus = "pending"
    progress: int = Field(default=0, ge=0, le=100, description="Progress percentage 0-100")
    error: Optional[str] = None
    result: Optional[Any] = Field(default=None, description="Opaque step payload")
    soft: bool = Field(default=False, description="Failures degrade to a skipped result")


class Workflow(BaseModel):
    """One run of the generation pipeline for a project."""

    id: str
    project_id: str
    project_type: ProjectType = "standard"
    params: Dict[str, Any] = Field(default_factory=dict)
    steps: List[WorkflowStep]
    current_step_index: int = Field(default=0, ge=0)
    status: WorkflowStatus = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failed_step_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def step(self, step_id: str) -> Optional[WorkflowStep]:
        """Find a step by its id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_statuses(self) -> Dict[str, str]:
        return {step.id: step.status for step in self.steps}

    @field_serializer("created_at", "updated_at", "completed_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None
