"""Weighted per-stage progress aggregation."""

import enum
import threading


class ProgressState(str, enum.Enum):
    INITIALIZING = "initializing"
    RESUMING = "resuming"
    DOWNLOADING = "downloading"
    INSTALLING = "installing"
    MOVING_TO_INSTALL = "moving_to_install"
    BUILD_VERIFICATION = "build_verification"
    PREREQUISITES_INSTALL = "prerequisites_install"
    CLEAN_UP = "clean_up"


# Ordered list of progress stages
PROGRESS_STATES = list(ProgressState)

# Default weights; the orchestrator recomputes most of them per attempt
DEFAULT_WEIGHTS = {
    ProgressState.INITIALIZING: 0.0,
    ProgressState.RESUMING: 0.0,
    ProgressState.DOWNLOADING: 1.0,
    ProgressState.INSTALLING: 1.0,
    ProgressState.MOVING_TO_INSTALL: 0.0,
    ProgressState.BUILD_VERIFICATION: 1.0,
    ProgressState.PREREQUISITES_INSTALL: 0.0,
    ProgressState.CLEAN_UP: 0.0,
}

STATE_TEXT = {
    ProgressState.INITIALIZING: "Initializing",
    ProgressState.RESUMING: "Resuming",
    ProgressState.DOWNLOADING: "Downloading",
    ProgressState.INSTALLING: "Installing",
    ProgressState.MOVING_TO_INSTALL: "Moving files",
    ProgressState.BUILD_VERIFICATION: "Verifying",
    ProgressState.PREREQUISITES_INSTALL: "Installing prerequisites",
    ProgressState.CLEAN_UP: "Cleaning up",
}


class ProgressTracker:
    """Holds per-stage progress and weights and reduces them to one 0..1 value."""

    def __init__(self):
        self._lock = threading.Lock()
        self._progress: dict[ProgressState, float] = {}
        self._weights: dict[ProgressState, float] = {}
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._progress = {s: 0.0 for s in PROGRESS_STATES}
            self._weights = dict(DEFAULT_WEIGHTS)

    def set_state_progress(self, state: ProgressState, value: float) -> None:
        with self._lock:
            self._progress[state] = min(max(value, 0.0), 1.0)

    def get_state_progress(self, state: ProgressState) -> float:
        with self._lock:
            return self._progress[state]

    def set_state_weight(self, state: ProgressState, weight: float) -> None:
        with self._lock:
            self._weights[state] = max(weight, 0.0)

    def get_state_weight(self, state: ProgressState) -> float:
        with self._lock:
            return self._weights[state]

    def get_progress(self) -> float:
        """Weighted average of all stage progress values, in [0, 1]."""
        with self._lock:
            total_weight = sum(self._weights.values())
            if total_weight <= 0.0:
                return 0.0
            done = sum(self._progress[s] * w for s, w in self._weights.items())
        return min(max(done / total_weight, 0.0), 1.0)

    @property
    def current_state(self) -> ProgressState:
        """First stage in order that has not completed."""
        with self._lock:
            for state in PROGRESS_STATES:
                if self._progress[state] < 1.0:
                    return state
        return ProgressState.CLEAN_UP

    @property
    def state_text(self) -> str:
        return STATE_TEXT[self.current_state]
