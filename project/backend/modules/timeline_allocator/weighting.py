"""
Content weights for scene timing.

Longer script excerpts get more screen time, with diminishing returns.
"""

from typing import Sequence

import numpy as np


def word_count(text: str) -> int:
    """Count whitespace-separated words."""
    return len((text or "").split())


def content_weights(word_counts: Sequence[int]) -> np.ndarray:
    """
    Weight each scene by the square root of its word count.

    Empty or one-word scenes all get weight 1, so no scene is starved.

    Args:
        word_counts: Word count per scene, in scene order

    Returns:
        Array of weights (>= 1)
    """
    counts = np.asarray(word_counts, dtype=float)
    return np.sqrt(np.maximum(1.0, counts))
