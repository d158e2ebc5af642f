"""Cooperative pause/cancel state shared between the worker and status callers."""

import enum
import threading
import time


class ControlMode(str, enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"


class ControlState:
    """Single lock-guarded control value read at well-defined checkpoints."""

    def __init__(self):
        self._lock = threading.Lock()
        self._mode = ControlMode.RUNNING
        self._resumed = threading.Event()
        self._resumed.set()

    @property
    def mode(self) -> ControlMode:
        with self._lock:
            return self._mode

    @property
    def is_paused(self) -> bool:
        return self.mode is ControlMode.PAUSED

    @property
    def is_cancelling(self) -> bool:
        return self.mode is ControlMode.CANCELLING

    def pause(self) -> bool:
        """Enter the paused state. Returns False if cancelling."""
        with self._lock:
            if self._mode is ControlMode.CANCELLING:
                return False
            self._mode = ControlMode.PAUSED
            self._resumed.clear()
            return True

    def resume(self) -> None:
        with self._lock:
            if self._mode is ControlMode.PAUSED:
                self._mode = ControlMode.RUNNING
            self._resumed.set()

    def cancel(self) -> None:
        """Enter the cancelling state; also releases anyone waiting on a pause."""
        with self._lock:
            self._mode = ControlMode.CANCELLING
            self._resumed.set()

    def wait_while_paused(self, poll_interval: float = 0.1) -> float:
        """Block while paused. Returns the seconds spent waiting."""
        started = time.monotonic()
        while not self._resumed.wait(poll_interval):
            pass
        return time.monotonic() - started
