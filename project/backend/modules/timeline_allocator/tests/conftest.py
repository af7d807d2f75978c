"""
Pytest fixtures for timeline allocator tests.
"""
import pytest

from shared.models.scene import SceneDraft


@pytest.fixture
def make_scenes():
    """Build scene drafts with the given word counts (scene numbers start at 1)."""
    def _make_scenes(word_counts):
        return [
            SceneDraft(scene_number=index + 1, script_excerpt=" ".join(["word"] * count))
            for index, count in enumerate(word_counts)
        ]
    return _make_scenes


@pytest.fixture
def assert_partition():
    """Assert the standard partition postconditions."""
    def _assert_partition(intervals, total_duration, count):
        assert len(intervals) == count
        assert [i.scene_number for i in intervals] == sorted(i.scene_number for i in intervals)
        assert intervals[0].start_seconds == pytest.approx(0.0, abs=1e-3)
        assert intervals[-1].end_seconds == pytest.approx(total_duration, abs=1e-3)
        for current, following in zip(intervals, intervals[1:]):
            assert current.end_seconds == pytest.approx(following.start_seconds, abs=1e-3)
        assert sum(i.duration for i in intervals) == pytest.approx(total_duration, abs=1e-3)
    return _assert_partition
