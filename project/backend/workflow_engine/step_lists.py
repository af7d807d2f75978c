"""
Step catalogue per project type.

Each project type has a fixed, ordered step list. Step 0 is always "create",
completed when the workflow is recorded.
"""

from typing import Any, Dict, List, Optional, Sequence

from shared.errors import ValidationError
from shared.models.workflow import WorkflowStep

DISPLAY_NAMES = {
    "create": "Create Project",
    "generate_audio": "Generate Narration",
    "analyze_music_audio": "Analyze Music",
    "parse_dialogue": "Parse Dialogue",
    "generate_scenes": "Generate Scenes",
    "process_timestamps": "Process Timestamps",
    "extract_characters": "Extract Characters",
    "generate_images": "Generate Images",
    "generate_thumbnail": "Generate Thumbnail",
    "generate_sora_prompts": "Generate Video Prompts",
    "generate_sora_videos": "Generate Videos",
    "complete": "Complete",
}

# Failures in these steps degrade to a skipped result
SOFT_STEPS = frozenset({
    "extract_characters",
    "generate_thumbnail",
    "generate_sora_prompts",
    "generate_sora_videos",
})

STANDARD_STEPS = (
    "create",
    "generate_audio",
    "generate_scenes",
    "extract_characters",
    "generate_images",
    "generate_thumbnail",
    "generate_sora_prompts",
    "complete",
)

ANIMATION_STEPS = (
    "create",
    "parse_dialogue",
    "extract_characters",
    "generate_images",
    "generate_thumbnail",
    "complete",
)

# Order in which a resume workflow runs whatever work is missing
RESUME_ORDER = ("process_timestamps", "generate_images", "generate_thumbnail")

PIPELINE_PROJECT_TYPES = ("standard", "music-video", "animation")


def make_step(step_id: str, soft: Optional[bool] = None) -> WorkflowStep:
    if step_id not in DISPLAY_NAMES:
        raise ValidationError(f"Unknown workflow step: {step_id}")
    return WorkflowStep(
        id=step_id,
        display_name=DISPLAY_NAMES[step_id],
        soft=step_id in SOFT_STEPS if soft is None else soft,
    )


def music_video_step_ids(params: Dict[str, Any]) -> List[str]:
    step_ids = ["create"]
    if params.get("music_audio_url"):
        step_ids.append("analyze_music_audio")
    step_ids += [
        "generate_scenes",
        "extract_characters",
        "generate_images",
        "generate_thumbnail",
        "generate_sora_prompts",
        "complete",
    ]
    return step_ids


def build_steps(project_type: str, params: Optional[Dict[str, Any]] = None) -> List[WorkflowStep]:
    """
    Build the ordered step list for a pipeline project type.

    Args:
        project_type: standard, music-video or animation
        params: Workflow params; music_audio_url adds music analysis,
            generate_videos adds video generation before completion

    Returns:
        Fresh, pending steps

    Raises:
        ValidationError: For an unknown project type
    """
    params = params or {}
    if project_type == "standard":
        step_ids = list(STANDARD_STEPS)
    elif project_type == "music-video":
        step_ids = music_video_step_ids(params)
    elif project_type == "animation":
        step_ids = list(ANIMATION_STEPS)
    else:
        raise ValidationError(
            f"Unknown project type: {project_type}",
            details={"allowed": list(PIPELINE_PROJECT_TYPES)}
        )

    if params.get("generate_videos"):
        step_ids.insert(step_ids.index("complete"), "generate_sora_videos")

    return [make_step(step_id) for step_id in step_ids]


def build_resume_steps(missing: Sequence[str]) -> List[WorkflowStep]:
    """Steps for a resume workflow: create, the missing work in canonical order, complete."""
    ordered = [step_id for step_id in RESUME_ORDER if step_id in missing]
    if not ordered:
        raise ValidationError("Project appears to be complete")
    return [make_step("create")] + [make_step(step_id) for step_id in ordered] + [make_step("complete")]


def build_thumbnail_steps() -> List[WorkflowStep]:
    """Steps for a thumbnail-only workflow. The thumbnail step is hard here."""
    return [make_step("create"), make_step("generate_thumbnail", soft=False), make_step("complete")]
