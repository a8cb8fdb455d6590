"""Throughput bookkeeping for a merge run."""

import time

BYTES_PER_MB = 1_048_576
SECONDS_PER_HOUR = 3600.0


class ProcessingMetrics:
    """Counts files, audio seconds and bytes pushed through a merge."""

    def __init__(self) -> None:
        self.start_time = time.monotonic()
        self.files_processed = 0
        self.total_duration = 0.0  # seconds of audio
        self.bytes_processed = 0

    def update_file_processed(self, duration: float, size_bytes: int) -> None:
        self.files_processed += 1
        self.total_duration += duration
        self.bytes_processed += size_bytes

    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def throughput_mbps(self) -> float:
        """Megabytes per second since the run started (0 before any time passed)."""
        elapsed = self.elapsed()
        if elapsed <= 0:
            return 0.0
        return (self.bytes_processed / BYTES_PER_MB) / elapsed

    def as_dict(self) -> dict:
        return {
            "files_processed": self.files_processed,
            "audio_hours": round(self.total_duration / SECONDS_PER_HOUR, 2),
            "data_mb": round(self.bytes_processed / BYTES_PER_MB, 2),
            "elapsed_seconds": round(self.elapsed(), 1),
            "throughput_mbps": round(self.throughput_mbps(), 2),
        }

    def format_summary(self) -> str:
        elapsed = int(self.elapsed())
        return (
            "Processing Complete:\n"
            f"- Files processed: {self.files_processed}\n"
            f"- Audio duration: {self.total_duration / SECONDS_PER_HOUR:.2f} hours\n"
            f"- Data processed: {self.bytes_processed / BYTES_PER_MB:.2f} MB\n"
            f"- Time elapsed: {elapsed // 60}m {elapsed % 60}s\n"
            f"- Throughput: {self.throughput_mbps():.2f} MB/s"
        )
