"""Unit tests for download throughput (buildpatch/services/install/throughput.py)."""

import pytest

from buildpatch.services.install.throughput import (
    DownloadRecord,
    DownloadSpeedSampler,
    summarize_downloads,
)


class TestSummarizeDownloads:
    def test_empty(self):
        summary = summarize_downloads([])
        assert summary.total_bytes == 0
        assert summary.total_seconds == 0.0
        assert summary.average_speed == 0.0

    def test_overlapping_downloads(self):
        """Overlapping intervals are only counted once."""
        summary = summarize_downloads([
            DownloadRecord(start_time=1.0, end_time=3.0, download_size=2000),
            DownloadRecord(start_time=0.0, end_time=2.0, download_size=1000),
        ])
        assert summary.total_bytes == 3000
        assert summary.total_seconds == pytest.approx(3.0)
        assert summary.average_speed == pytest.approx(1000.0)

    def test_gaps_are_not_counted(self):
        summary = summarize_downloads([
            DownloadRecord(0.0, 1.0, 100),
            DownloadRecord(5.0, 6.0, 100),
        ])
        assert summary.total_seconds == pytest.approx(2.0)
        assert summary.average_speed == pytest.approx(100.0)

    def test_contained_download(self):
        """A download inside another adds bytes but no time."""
        summary = summarize_downloads([
            DownloadRecord(0.0, 4.0, 400),
            DownloadRecord(1.0, 2.0, 400),
        ])
        assert summary.total_seconds == pytest.approx(4.0)
        assert summary.average_speed == pytest.approx(200.0)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestDownloadSpeedSampler:
    def test_no_reading_before_interval(self):
        clock = FakeClock()
        sampler = DownloadSpeedSampler(clock=clock)
        clock.now = 0.2
        assert sampler.update(lambda: 1000) == 0.0

    def test_rolling_average(self):
        clock = FakeClock()
        sampler = DownloadSpeedSampler(num_readings=2, time_per_reading=0.5, clock=clock)
        clock.now = 1.0
        assert sampler.update(lambda: 1000) == pytest.approx(1000.0)
        clock.now = 2.0
        assert sampler.update(lambda: 3000) == pytest.approx(2000.0)
        # Oldest reading drops out
        clock.now = 3.0
        assert sampler.update(lambda: 3000) == pytest.approx(3000.0)
        assert sampler.average_speed == pytest.approx(3000.0)
