"""
Timeline allocator configuration.

Duration bounds and repair constants for scene timing.
"""

# Per-scene duration bounds for weighted allocation (seconds)
MIN_SCENE_DURATION = 3.0
MAX_SCENE_DURATION = 20.0

# At least one scene per this many seconds is recommended
TARGET_PANEL_FREQUENCY = 10.0

# Reconciliation: time budgeted per scene that has no usable timestamp
MISSING_SCENE_SECONDS = 5.0
# Compression to make room for missing scenes never frees more than this share of the total
MAX_COMPRESSION_RATIO = 0.2

# Partition postconditions are checked within this tolerance (seconds)
TIMING_TOLERANCE_SECONDS = 0.005

# Remaining time below this is treated as none (seconds)
EPSILON_SECONDS = 1e-6

# Music videos without analysed audio use fixed-length clips
DEFAULT_CLIP_SECONDS = 8
