"""
Timeline Allocator module.

Partitions a fixed narration/audio duration into contiguous per-scene
intervals, either by content weight or by repairing supplied timestamps.
"""

from modules.timeline_allocator.allocator import allocate_fixed_clips, allocate_weighted
from modules.timeline_allocator.reconciler import reconcile_timestamps
from modules.timeline_allocator.validator import is_valid_partition, validate_partition

__all__ = [
    "allocate_weighted",
    "allocate_fixed_clips",
    "reconcile_timestamps",
    "is_valid_partition",
    "validate_partition",
]
