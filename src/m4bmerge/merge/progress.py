"""Progress events, stage ranges and ffmpeg status-line parsing.

Every stage owns a fixed, non-overlapping slice of 0-100 so that a progress
bar driven by these events only ever moves forward:

    analyzing          0 - 10
    converting        10 - 80   (held at 79 until ffmpeg reports the end)
    merging           80 - 90
    writing_metadata  90 - 95
    completed         98 (cleanup), 100 (done)

Nothing in this module holds mutable state; the emitter only forwards events
to a sink callable.
"""

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional, Union

from m4bmerge.utils.logging import get_logger

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# Stage percentages
# ---------------------------------------------------------------------------

PROGRESS_ANALYZING_START = 0.0
PROGRESS_ANALYZING_END = 10.0
PROGRESS_CONVERTING_START = 10.0
PROGRESS_CONVERTING_END = 80.0
PROGRESS_CONVERTING_MAX = 79.0  # never reach 80 before ffmpeg says it is done
PROGRESS_MERGING_START = 80.0
PROGRESS_MERGING_END = 90.0
PROGRESS_METADATA_START = 90.0
PROGRESS_METADATA_END = 95.0
PROGRESS_FINALIZING = 95.0
PROGRESS_CLEANUP = 98.0
PROGRESS_COMPLETE = 100.0

SECONDS_PER_MINUTE = 60.0


class Stage(str, Enum):
    """Named phases of a merge."""

    ANALYZING = "analyzing"
    CONVERTING = "converting"
    MERGING = "merging"
    WRITING_METADATA = "writing_metadata"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_RANGES: dict[Stage, tuple[float, float]] = {
    Stage.ANALYZING: (PROGRESS_ANALYZING_START, PROGRESS_ANALYZING_END),
    Stage.CONVERTING: (PROGRESS_CONVERTING_START, PROGRESS_CONVERTING_END),
    Stage.MERGING: (PROGRESS_MERGING_START, PROGRESS_MERGING_END),
    Stage.WRITING_METADATA: (PROGRESS_METADATA_START, PROGRESS_METADATA_END),
    Stage.COMPLETED: (PROGRESS_CLEANUP, PROGRESS_COMPLETE),
}

# Highest value a stage may report while it is still running
STAGE_CEILINGS: dict[Stage, float] = {
    Stage.CONVERTING: PROGRESS_CONVERTING_MAX,
}


@dataclass
class ProgressEvent:
    """One status-change notification sent to the caller."""

    stage: Stage
    percentage: float
    message: str
    current_file: Optional[str] = None
    eta_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        self.percentage = min(max(float(self.percentage), 0.0), 100.0)

    def to_dict(self) -> dict:
        """Serialisable form: stage name, percentage, message, file, eta."""
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


ProgressSink = Callable[[ProgressEvent], None]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def calculate_stage_progress(
    current: float,
    total: float,
    start_percentage: float,
    end_percentage: float,
) -> float:
    """Linearly map current/total into [start_percentage, end_percentage]."""
    if total <= 0:
        return start_percentage
    ratio = min(max(current / total, 0.0), 1.0)
    return start_percentage + ratio * (end_percentage - start_percentage)


def stage_percentage(stage: Stage, ratio: float) -> float:
    """Absolute percentage for a 0.0-1.0 ratio through ``stage``.

    Stages without a range (failed, cancelled) map to 0.
    """
    if stage not in STAGE_RANGES:
        return 0.0
    start, end = STAGE_RANGES[stage]
    value = calculate_stage_progress(ratio, 1.0, start, end)
    return min(value, STAGE_CEILINGS.get(stage, end))


def format_eta(seconds: float) -> str:
    """Format remaining seconds as "45s" or "2m 5s"."""
    if seconds < SECONDS_PER_MINUTE:
        return f"{seconds:.0f}s"
    minutes = int(seconds // SECONDS_PER_MINUTE)
    remaining = seconds % SECONDS_PER_MINUTE
    return f"{minutes}m {remaining:.0f}s"


# ---------------------------------------------------------------------------
# ffmpeg status-line parsing
# ---------------------------------------------------------------------------


class ProgressMarker(Enum):
    """Non-positional results of parse_progress."""

    END = "end"


PROGRESS_END = ProgressMarker.END

# Keys of `-progress` output that carry the output position in microseconds.
# ffmpeg reports out_time_ms in microseconds as well.
_POSITION_KEYS = ("out_time_us", "out_time_ms")

_LEGACY_TIME_RE = re.compile(r"(?:^|\s)time=\s*(-?\d+:\d{2}:\d{2}(?:\.\d+)?)")
_SPEED_RE = re.compile(r"speed=\s*([0-9]*\.?[0-9]+(?:[eE][-+]?\d+)?)\s*x")


def parse_ffmpeg_time(time_str: str) -> Optional[float]:
    """Parse HH:MM:SS.ss into seconds, or None if malformed."""
    parts = time_str.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = (float(p) for p in parts)
    except ValueError:
        return None
    return hours * 3600.0 + minutes * 60.0 + seconds


def parse_progress(line: str) -> Union[float, ProgressMarker, None]:
    """Extract the output position from one ffmpeg status line.

    Returns:
        Position in seconds, PROGRESS_END when ffmpeg reports completion, or
        None when the line carries no position.
    """
    text = line.strip()
    if not text:
        return None

    key, sep, value = text.partition("=")
    if sep:
        key = key.strip()
        value = value.strip()
        if key in _POSITION_KEYS:
            try:
                return int(value) / 1_000_000.0
            except ValueError:
                return None  # "N/A" before the first packet
        if key == "progress":
            return PROGRESS_END if value == "end" else None

    match = _LEGACY_TIME_RE.search(text)
    if match:
        return parse_ffmpeg_time(match.group(1))
    return None


def parse_speed_multiplier(line: str) -> Optional[float]:
    """Extract the speed multiplier from "speed=1.5x", if present."""
    match = _SPEED_RE.search(line)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class ProgressEmitter:
    """Builds ProgressEvents for each stage and hands them to a sink.

    A sink that raises is logged and otherwise ignored; progress reporting
    must never abort a merge. Within a stage the reported percentage never
    goes down: a lower value is raised to the last one reported.
    """

    def __init__(self, sink: Optional[ProgressSink] = None):
        self.sink = sink
        self._last_stage: Optional[Stage] = None
        self._last_percentage = 0.0

    def emit_analyzing_start(self, message: str) -> None:
        self.emit_event(Stage.ANALYZING, PROGRESS_ANALYZING_START, message)

    def emit_analyzing_end(self, message: str) -> None:
        self.emit_event(Stage.ANALYZING, PROGRESS_ANALYZING_END, message)

    def emit_converting_start(self, message: str) -> None:
        self.emit_event(Stage.CONVERTING, PROGRESS_CONVERTING_START, message)

    def emit_converting_progress(
        self,
        percentage: float,
        message: str,
        current_file: Optional[str] = None,
        eta_seconds: Optional[float] = None,
    ) -> None:
        """Emit a converting update, clamped into the converting range."""
        clamped = min(max(percentage, PROGRESS_CONVERTING_START), PROGRESS_CONVERTING_MAX)
        self.emit_event(Stage.CONVERTING, clamped, message, current_file, eta_seconds)

    def emit_metadata_start(self, message: str) -> None:
        self.emit_event(Stage.WRITING_METADATA, PROGRESS_METADATA_START, message)

    def emit_finalizing(self, message: str) -> None:
        self.emit_event(Stage.WRITING_METADATA, PROGRESS_FINALIZING, message)

    def emit_cleanup(self, message: str) -> None:
        self.emit_event(Stage.COMPLETED, PROGRESS_CLEANUP, message)

    def emit_complete(self, message: str) -> None:
        self.emit_event(Stage.COMPLETED, PROGRESS_COMPLETE, message)

    def emit_failed(self, reason: str, percentage: float = 0.0) -> None:
        self.emit_event(Stage.FAILED, percentage, reason)

    def emit_cancelled(self, message: str, percentage: float = 0.0) -> None:
        self.emit_event(Stage.CANCELLED, percentage, message)

    def emit_custom(
        self,
        stage: Stage,
        percentage: float,
        message: str,
        current_file: Optional[str] = None,
        eta_seconds: Optional[float] = None,
    ) -> None:
        self.emit_event(stage, percentage, message, current_file, eta_seconds)

    def emit_event(
        self,
        stage: Stage,
        percentage: float,
        message: str,
        current_file: Optional[str] = None,
        eta_seconds: Optional[float] = None,
    ) -> None:
        if stage is self._last_stage:
            percentage = max(percentage, self._last_percentage)
        self._last_stage = stage
        self._last_percentage = percentage

        event = ProgressEvent(
            stage=stage,
            percentage=percentage,
            message=message,
            current_file=current_file,
            eta_seconds=eta_seconds,
        )
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception as e:
            log.warning("progress_sink_failed", stage=stage.value, error=str(e))
