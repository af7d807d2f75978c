"""
Timestamp reconciliation.

Repair externally supplied, possibly malformed per-scene start/end guesses
into a contiguous partition of [0, total_duration]. Falls back to weighted
allocation when no guess is usable.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from shared.logging import get_logger
from shared.models.scene import SceneInterval, SceneTimestamp
from modules.timeline_allocator.allocator import (
    SceneLike,
    allocate_weighted,
    intervals_from_durations,
    order_scenes,
)
from modules.timeline_allocator.config import (
    EPSILON_SECONDS,
    MAX_COMPRESSION_RATIO,
    MISSING_SCENE_SECONDS,
)
from modules.timeline_allocator.validator import validate_total_duration

logger = get_logger("timeline_allocator")


@dataclass
class _Placed:
    scene_number: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


def _usable(timestamp: SceneTimestamp, total_duration: float) -> Optional[_Placed]:
    start, end = timestamp.start_seconds, timestamp.end_seconds
    if start is None or end is None:
        return None
    if not (math.isfinite(start) and math.isfinite(end)):
        return None
    start = min(max(start, 0.0), total_duration)
    end = min(max(end, 0.0), total_duration)
    if start >= end:
        return None
    return _Placed(timestamp.scene_number, start, end)


def _close_discontinuities(placed: List[_Placed]) -> None:
    """Move each mismatched boundary pair to its midpoint."""
    for current, following in zip(placed, placed[1:]):
        if current.end != following.start:
            midpoint = (current.end + following.start) / 2
            current.end = midpoint
            following.start = midpoint


def _repair(placed: List[_Placed], total_duration: float, anchor_end: bool) -> List[_Placed]:
    """
    Anchor the ends, close gaps/overlaps, and drop intervals the repair collapsed.

    Dropping an interval reopens a discontinuity, so closing repeats until
    every survivor has positive length. The last interval is stretched to
    total_duration only when anchor_end is set.
    """
    placed[0].start = 0.0
    if anchor_end:
        placed[-1].end = total_duration
    _close_discontinuities(placed)

    while True:
        collapsed = [p for p in placed if p.duration <= EPSILON_SECONDS]
        if not collapsed:
            return placed
        for p in collapsed:
            logger.warning(
                f"Dropping timestamp for scene {p.scene_number} collapsed by repair",
                extra={"scene_number": p.scene_number}
            )
        placed = [p for p in placed if p.duration > EPSILON_SECONDS]
        if not placed:
            return placed
        _close_discontinuities(placed)


def reconcile_timestamps(
    scenes: Sequence[SceneLike],
    timestamps: Sequence[SceneTimestamp],
    total_duration: float,
) -> List[SceneInterval]:
    """
    Turn per-scene timestamp guesses into a valid partition.

    Guesses that are missing, non-finite or empty (start >= end) are
    discarded, values are clamped into [0, total_duration], and guesses for
    unknown scene numbers are ignored (the first guess per scene wins).
    The first placed scene starts at 0; the last placed scene ends at
    total_duration unless scenes without a guess follow it. Scenes left
    without a usable guess receive either the time left over after the
    placed scenes, or room freed by uniformly compressing the placed
    scenes: MISSING_SCENE_SECONDS each, capped at MAX_COMPRESSION_RATIO of
    the total. All scenes are then laid out in scene-number order from 0
    with the last ending at total_duration.

    Args:
        scenes: Every scene that needs an interval
        timestamps: Externally supplied guesses, in any order
        total_duration: Duration to cover in seconds

    Returns:
        One interval per scene, ordered by scene number

    Raises:
        ValidationError: If there are no scenes or the duration is not positive
    """
    validate_total_duration(total_duration)
    ordered = order_scenes(scenes)
    scene_numbers = [scene.scene_number for scene in ordered]
    known = set(scene_numbers)

    by_scene: Dict[int, _Placed] = {}
    discarded = 0
    for timestamp in timestamps:
        if timestamp.scene_number not in known or timestamp.scene_number in by_scene:
            discarded += 1
            continue
        placed = _usable(timestamp, total_duration)
        if placed is None:
            discarded += 1
            continue
        by_scene[timestamp.scene_number] = placed

    if discarded:
        logger.warning(f"Discarded {discarded} unusable scene timestamps", extra={"discarded": discarded})

    if not by_scene:
        logger.warning("No usable scene timestamps, falling back to weighted allocation")
        return allocate_weighted(ordered, total_duration)

    # Scenes missing after the last placed one take the time left after it
    anchor_end = scene_numbers[-1] in by_scene
    placed = _repair(
        [by_scene[number] for number in scene_numbers if number in by_scene],
        total_duration,
        anchor_end,
    )
    if not placed:
        logger.warning("Every scene timestamp collapsed during repair, falling back to weighted allocation")
        return allocate_weighted(ordered, total_duration)

    durations: Dict[int, float] = {p.scene_number: p.duration for p in placed}
    missing = [number for number in scene_numbers if number not in durations]

    if missing:
        remaining = total_duration - sum(durations.values())
        if remaining > EPSILON_SECONDS:
            share = remaining / len(missing)
            logger.info(
                f"Filling {len(missing)} scenes without timestamps from {remaining:.2f}s of unallocated time",
                extra={"missing_scenes": missing}
            )
        else:
            space_needed = min(len(missing) * MISSING_SCENE_SECONDS, total_duration * MAX_COMPRESSION_RATIO)
            scale = (total_duration - space_needed) / total_duration
            for number in durations:
                durations[number] *= scale
            share = space_needed / len(missing)
            logger.info(
                f"Compressing placed scenes by {scale:.3f} to fit {len(missing)} scenes without timestamps",
                extra={"missing_scenes": missing, "space_needed": space_needed}
            )
        for number in missing:
            durations[number] = share

    return intervals_from_durations(
        scene_numbers, [durations[number] for number in scene_numbers], total_duration
    )
