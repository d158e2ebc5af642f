"""Download throughput: whole-run averages and a live speed sampler."""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

NUM_DOWNLOAD_READINGS = 5
TIME_PER_READING = 0.5


@dataclass(frozen=True, order=True)
class DownloadRecord:
    """Wall-clock interval and size of one completed chunk download."""

    start_time: float
    end_time: float
    download_size: int


@dataclass(frozen=True)
class DownloadSummary:
    total_bytes: int
    total_seconds: float
    average_speed: float  # bytes/sec


def summarize_downloads(records: Iterable[DownloadRecord]) -> DownloadSummary:
    """Average download speed over non-overlapping wall-clock time.

    Downloads run concurrently, so summing every record's duration would
    overstate the time spent. Records are walked in start order and only the
    part of each interval past the furthest end seen so far is counted.
    Gaps between downloads are not counted. Every record's bytes are.
    """
    ordered = sorted(records)
    if not ordered:
        return DownloadSummary(total_bytes=0, total_seconds=0.0, average_speed=0.0)

    first = ordered[0]
    total_seconds = first.end_time - first.start_time
    total_bytes = first.download_size
    recorded_end = first.end_time
    for record in ordered[1:]:
        if recorded_end < record.end_time:
            if record.start_time > recorded_end:
                total_seconds += record.end_time - record.start_time
            else:
                total_seconds += record.end_time - recorded_end
            recorded_end = record.end_time
        total_bytes += record.download_size

    speed = total_bytes / total_seconds if total_seconds > 0 else 0.0
    return DownloadSummary(total_bytes=total_bytes, total_seconds=total_seconds, average_speed=speed)


class DownloadSpeedSampler:
    """Rolling average of the last few byte-count readings, used for status only."""

    def __init__(
        self,
        num_readings: int = NUM_DOWNLOAD_READINGS,
        time_per_reading: float = TIME_PER_READING,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._num_readings = num_readings
        self._time_per_reading = time_per_reading
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        now = self._clock()
        self._last_time = now
        self._last_reading_time = now
        self._delta = 0.0
        self._data_readings = [0.0] * self._num_readings
        self._time_readings = [0.0] * self._num_readings
        self._index = 0
        self._average = 0.0

    @property
    def average_speed(self) -> float:
        return self._average

    def update(self, read_bytes: Callable[[], int]) -> float:
        """Take a reading if enough time has passed. Returns the current average.

        ``read_bytes`` returns the bytes received since it was last called.
        """
        now = self._clock()
        self._delta += now - self._last_time
        if self._delta > self._time_per_reading:
            self._data_readings[self._index] = float(read_bytes())
            self._time_readings[self._index] = now - self._last_reading_time
            self._last_reading_time = now
            self._index = (self._index + 1) % self._num_readings
            self._delta = 0.0
            total_time = sum(self._time_readings)
            self._average = sum(self._data_readings) / total_time if total_time > 0 else 0.0
        self._last_time = now
        return self._average
