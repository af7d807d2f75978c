"""
Partition validation.

Checks that scene intervals form an ordered, contiguous partition of
[0, total_duration].
"""

import math
from typing import List, Optional, Sequence

from shared.errors import ValidationError
from shared.models.scene import SceneInterval
from modules.timeline_allocator.config import TIMING_TOLERANCE_SECONDS


def validate_total_duration(total_duration: float) -> None:
    if total_duration is None or not math.isfinite(total_duration) or total_duration <= 0:
        raise ValidationError(
            f"Total duration must be a positive number of seconds, got {total_duration}"
        )


def partition_errors(
    intervals: Sequence[SceneInterval],
    total_duration: float,
    expected_count: Optional[int] = None,
    tolerance: float = TIMING_TOLERANCE_SECONDS,
) -> List[str]:
    """
    List every way the intervals violate the partition contract.

    Args:
        intervals: Intervals in output order
        total_duration: Duration the partition must cover
        expected_count: Number of scenes the partition must contain, if known
        tolerance: Allowed absolute error in seconds

    Returns:
        Human-readable problems; empty when the partition is valid
    """
    problems: List[str] = []

    if expected_count is not None and len(intervals) != expected_count:
        problems.append(f"Expected {expected_count} intervals, got {len(intervals)}")
    if not intervals:
        problems.append("Partition is empty")
        return problems

    numbers = [interval.scene_number for interval in intervals]
    if numbers != sorted(numbers) or len(set(numbers)) != len(numbers):
        problems.append(f"Intervals are not strictly ordered by scene number: {numbers}")

    if abs(intervals[0].start_seconds) > tolerance:
        problems.append(f"First interval starts at {intervals[0].start_seconds}, not 0")
    if abs(intervals[-1].end_seconds - total_duration) > tolerance:
        problems.append(
            f"Last interval ends at {intervals[-1].end_seconds}, not {total_duration}"
        )

    for current, following in zip(intervals, intervals[1:]):
        if abs(current.end_seconds - following.start_seconds) > tolerance:
            problems.append(
                f"Discontinuity between scene {current.scene_number} "
                f"(ends {current.end_seconds}) and scene {following.scene_number} "
                f"(starts {following.start_seconds})"
            )

    return problems


def is_valid_partition(
    intervals: Sequence[SceneInterval],
    total_duration: float,
    expected_count: Optional[int] = None,
) -> bool:
    return not partition_errors(intervals, total_duration, expected_count)


def validate_partition(
    intervals: Sequence[SceneInterval],
    total_duration: float,
    expected_count: Optional[int] = None,
) -> None:
    """
    Raise if the intervals are not a valid partition.

    Raises:
        ValidationError: With every detected problem in details["problems"]
    """
    problems = partition_errors(intervals, total_duration, expected_count)
    if problems:
        raise ValidationError(
            f"Invalid scene timeline: {problems[0]}",
            details={"problems": problems, "total_duration": total_duration}
        )
