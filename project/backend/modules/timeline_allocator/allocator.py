"""
Weighted scene timing.

Partition a fixed total duration across scenes in proportion to their
script length, within per-scene duration bounds.
"""

from typing import List, Sequence, Union

import numpy as np

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.models.scene import Scene, SceneDraft, SceneInterval
from modules.timeline_allocator.config import (
    MAX_SCENE_DURATION,
    MIN_SCENE_DURATION,
    TARGET_PANEL_FREQUENCY,
)
from modules.timeline_allocator.validator import validate_total_duration
from modules.timeline_allocator.weighting import content_weights, word_count

logger = get_logger("timeline_allocator")

SceneLike = Union[Scene, SceneDraft]


def order_scenes(scenes: Sequence[SceneLike]) -> List[SceneLike]:
    """
    Sort scenes by scene number.

    Raises:
        ValidationError: If there are no scenes or scene numbers repeat
    """
    if not scenes:
        raise ValidationError("Cannot allocate a timeline for zero scenes")
    ordered = sorted(scenes, key=lambda scene: scene.scene_number)
    numbers = [scene.scene_number for scene in ordered]
    if len(set(numbers)) != len(numbers):
        raise ValidationError(f"Duplicate scene numbers: {numbers}")
    return ordered


def clamp_and_rescale(raw_durations: np.ndarray, total_duration: float) -> np.ndarray:
    """
    Clamp durations into [MIN, MAX] and restore the total in one pass.

    Time added or removed by clamping is taken from, or given to, the scenes
    that were inside the bounds. A final corrective factor
    total / sum(durations) then makes the sum exact. Neither step is repeated,
    so adversarial inputs (e.g. more scenes than total / MIN) can leave a
    duration outside the bounds; the total is always honoured.

    Args:
        raw_durations: Proportional durations summing to total_duration
        total_duration: Target total in seconds

    Returns:
        Durations summing to total_duration
    """
    pinned = (raw_durations < MIN_SCENE_DURATION) | (raw_durations > MAX_SCENE_DURATION)
    durations = np.clip(raw_durations, MIN_SCENE_DURATION, MAX_SCENE_DURATION)
    adjustment = durations.sum() - raw_durations.sum()

    free = ~pinned
    if pinned.any() and free.any():
        free_total = durations[free].sum()
        target = free_total - adjustment
        if target > 0:
            durations[free] *= target / free_total

    return durations * (total_duration / durations.sum())


def intervals_from_durations(
    scene_numbers: Sequence[int],
    durations: Sequence[float],
    total_duration: float,
) -> List[SceneInterval]:
    """
    Lay durations end to end from 0 in the given order.

    The last interval ends exactly at total_duration.
    """
    ends = np.cumsum(np.asarray(durations, dtype=float))
    intervals = []
    start = 0.0
    for index, scene_number in enumerate(scene_numbers):
        is_last = index == len(scene_numbers) - 1
        end = float(total_duration) if is_last else float(ends[index])
        end = max(end, start)
        intervals.append(SceneInterval(scene_number=scene_number, start_seconds=start, end_seconds=end))
        start = end
    return intervals


def check_panel_frequency(scene_count: int, total_duration: float) -> bool:
    """Warn when there are fewer scenes than one per TARGET_PANEL_FREQUENCY seconds."""
    required = int(np.ceil(total_duration / TARGET_PANEL_FREQUENCY))
    if scene_count < required:
        logger.warning(
            f"{scene_count} scenes for {total_duration:.1f}s (recommended: at least {required})",
            extra={"scene_count": scene_count, "recommended": required}
        )
        return False
    return True


def allocate_weighted(scenes: Sequence[SceneLike], total_duration: float) -> List[SceneInterval]:
    """
    Partition total_duration across scenes by content weight.

    Args:
        scenes: Scenes with scene_number and script_excerpt
        total_duration: Narration/audio duration in seconds

    Returns:
        One interval per scene, ordered by scene number, covering [0, total_duration]

    Raises:
        ValidationError: If there are no scenes or the duration is not positive
    """
    validate_total_duration(total_duration)
    ordered = order_scenes(scenes)

    weights = content_weights([word_count(scene.script_excerpt) for scene in ordered])
    raw_durations = weights / weights.sum() * total_duration
    durations = clamp_and_rescale(raw_durations, total_duration)

    check_panel_frequency(len(ordered), total_duration)

    intervals = intervals_from_durations(
        [scene.scene_number for scene in ordered], durations, total_duration
    )
    logger.info(
        f"Allocated {len(intervals)} scenes over {total_duration:.1f}s",
        extra={
            "scene_count": len(intervals),
            "total_duration": total_duration,
            "min_duration": round(float(durations.min()), 3),
            "max_duration": round(float(durations.max()), 3),
        }
    )
    return intervals


def allocate_fixed_clips(scene_numbers: Sequence[int], clip_seconds: float) -> List[SceneInterval]:
    """Lay out fixed-length clips back to back (no audio to fit)."""
    if clip_seconds <= 0:
        raise ValidationError(f"Clip length must be positive, got {clip_seconds}")
    ordered = sorted(scene_numbers)
    return [
        SceneInterval(
            scene_number=number,
            start_seconds=index * clip_seconds,
            end_seconds=(index + 1) * clip_seconds,
        )
        for index, number in enumerate(ordered)
    ]
