"""Unit tests for weighted progress (buildpatch/services/install/progress.py)."""

import pytest

from buildpatch.services.install.progress import PROGRESS_STATES, ProgressState, ProgressTracker


class TestWeightedProgress:
    def test_starts_at_zero(self):
        assert ProgressTracker().get_progress() == 0.0

    def test_weighted_average(self):
        """Only weighted states contribute, in proportion to their weight."""
        tracker = ProgressTracker()
        for state in PROGRESS_STATES:
            tracker.set_state_weight(state, 0.0)
        tracker.set_state_weight(ProgressState.DOWNLOADING, 3.0)
        tracker.set_state_weight(ProgressState.BUILD_VERIFICATION, 1.0)
        tracker.set_state_progress(ProgressState.DOWNLOADING, 1.0)
        assert tracker.get_progress() == pytest.approx(0.75)

    def test_all_weights_zero(self):
        tracker = ProgressTracker()
        for state in PROGRESS_STATES:
            tracker.set_state_weight(state, 0.0)
            tracker.set_state_progress(state, 1.0)
        assert tracker.get_progress() == 0.0

    def test_values_are_clamped(self):
        tracker = ProgressTracker()
        tracker.set_state_progress(ProgressState.DOWNLOADING, 1.7)
        tracker.set_state_progress(ProgressState.INSTALLING, -2.0)
        tracker.set_state_weight(ProgressState.BUILD_VERIFICATION, -1.0)
        assert tracker.get_state_progress(ProgressState.DOWNLOADING) == 1.0
        assert tracker.get_state_progress(ProgressState.INSTALLING) == 0.0
        assert tracker.get_state_weight(ProgressState.BUILD_VERIFICATION) == 0.0

    def test_reset_restores_defaults(self):
        tracker = ProgressTracker()
        tracker.set_state_weight(ProgressState.DOWNLOADING, 9.0)
        tracker.set_state_progress(ProgressState.DOWNLOADING, 0.5)
        tracker.reset()
        assert tracker.get_state_weight(ProgressState.DOWNLOADING) == 1.0
        assert tracker.get_state_progress(ProgressState.DOWNLOADING) == 0.0


class TestCurrentState:
    def test_first_incomplete_state(self):
        tracker = ProgressTracker()
        tracker.set_state_progress(ProgressState.INITIALIZING, 1.0)
        tracker.set_state_progress(ProgressState.RESUMING, 1.0)
        assert tracker.current_state is ProgressState.DOWNLOADING
        assert tracker.state_text == "Downloading"

    def test_all_complete(self):
        tracker = ProgressTracker()
        for state in PROGRESS_STATES:
            tracker.set_state_progress(state, 1.0)
        assert tracker.current_state is ProgressState.CLEAN_UP
