"""Tests for ProcessingMetrics."""

import time
from unittest.mock import patch

import pytest

from m4bmerge.merge.metrics import ProcessingMetrics


def test_new_metrics_are_empty() -> None:
    metrics = ProcessingMetrics()

    assert metrics.files_processed == 0
    assert metrics.bytes_processed == 0
    assert metrics.total_duration == 0.0


def test_update_file_processed() -> None:
    metrics = ProcessingMetrics()
    metrics.update_file_processed(60.0, 1_048_576)
    metrics.update_file_processed(30.0, 1_048_576)

    assert metrics.files_processed == 2
    assert metrics.total_duration == pytest.approx(90.0)
    assert metrics.bytes_processed == 2_097_152


def test_elapsed_grows() -> None:
    metrics = ProcessingMetrics()
    time.sleep(0.01)
    assert metrics.elapsed() >= 0.01


def test_throughput() -> None:
    metrics = ProcessingMetrics()
    metrics.update_file_processed(60.0, 10_485_760)

    with patch.object(metrics, "elapsed", return_value=2.0):
        assert metrics.throughput_mbps() == pytest.approx(5.0)
    with patch.object(metrics, "elapsed", return_value=0.0):
        assert metrics.throughput_mbps() == 0.0


def test_format_summary() -> None:
    metrics = ProcessingMetrics()
    metrics.update_file_processed(7200.0, 5_242_880)

    with patch.object(metrics, "elapsed", return_value=125.0):
        summary = metrics.format_summary()

    assert "Files processed: 1" in summary
    assert "Audio duration: 2.00 hours" in summary
    assert "Data processed: 5.00 MB" in summary
    assert "Time elapsed: 2m 5s" in summary
    assert "Throughput: 0.04 MB/s" in summary
