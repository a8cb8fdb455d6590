"""ffmpeg process execution and progress monitoring.

One merge runs one ffmpeg child. Its stderr carries ``-progress`` key=value
lines (and, from older builds, ``time=HH:MM:SS.ss`` stats). The loop reads
them one at a time:

    spawned -> monitoring -> finalizing (completed | cancelled | failed)

Cancellation is only checked at line boundaries, so a cancel request is seen
within one status line of ffmpeg output (several per second in practice).
Everything here is blocking; async callers run it through
``asyncio.to_thread``.
"""

import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Optional, Sequence, Union

from m4bmerge.merge.cleanup import (
    PROCESS_TERMINATION_CHECK_DELAY_S,
    PROCESS_TERMINATION_MAX_ATTEMPTS,
    ProcessGuard,
)
from m4bmerge.merge.context import ProcessingContext
from m4bmerge.merge.errors import FFmpegExecutionError, ProcessingCancelled, SpawnError
from m4bmerge.merge.progress import (
    PROGRESS_CONVERTING_START,
    PROGRESS_END,
    ProgressEmitter,
    Stage,
    format_eta,
    parse_progress,
    parse_speed_multiplier,
    stage_percentage,
)
from m4bmerge.utils.logging import get_logger

log = get_logger(__name__)

# Progress estimation when the total duration is unknown
MIN_UPDATES_FOR_ESTIMATE = 5
INITIAL_TIME_ESTIMATE_MULTIPLIER = 10.0

# Substrings (case-insensitive) that abort the merge immediately
FATAL_ERROR_MARKERS = ("no such file", "invalid data")
# Lines naming the input/output stream headers are never treated as errors
IGNORED_ERROR_CONTEXT = ("Input", "Output")

STDERR_TAIL_LINES = 20

CONVERTING_MESSAGE = "Converting and merging audio files..."


class MonitorOutcome(Enum):
    """How the monitoring loop ended, when it did not raise."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class ProcessExecution:
    """Mutable state for one ffmpeg invocation."""

    process: subprocess.Popen
    guard: ProcessGuard
    emitter: ProgressEmitter
    total_duration: Optional[float] = None  # seconds, when known up front
    last_progress_time: float = 0.0
    estimated_total_time: float = 0.0
    progress_count: int = 0
    last_percentage: float = PROGRESS_CONVERTING_START
    speed: Optional[float] = None
    completed: bool = False
    cancelled: bool = False
    started_at: float = field(default_factory=time.monotonic)
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))

    @property
    def stream(self) -> Optional[IO]:
        return self.process.stderr

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


# ---------------------------------------------------------------------------
# Spawn
# ---------------------------------------------------------------------------


def attach_process(
    process: subprocess.Popen,
    context: ProcessingContext,
    total_duration: Optional[float] = None,
    description: str = "ffmpeg merge",
    termination_attempts: int = PROCESS_TERMINATION_MAX_ATTEMPTS,
    termination_delay: float = PROCESS_TERMINATION_CHECK_DELAY_S,
) -> ProcessExecution:
    """Wrap an already-started ffmpeg child in monitoring state and a guard."""
    guard = ProcessGuard.from_context(
        process,
        context,
        description,
        max_attempts=termination_attempts,
        check_delay=termination_delay,
    )
    return ProcessExecution(
        process=process,
        guard=guard,
        emitter=context.emitter,
        total_duration=total_duration if total_duration and total_duration > 0 else None,
    )


def setup_process_execution(
    argv: Sequence[str],
    context: ProcessingContext,
    total_duration: Optional[float] = None,
    termination_attempts: int = PROCESS_TERMINATION_MAX_ATTEMPTS,
    termination_delay: float = PROCESS_TERMINATION_CHECK_DELAY_S,
) -> ProcessExecution:
    """Start ffmpeg with stderr captured.

    Raises:
        SpawnError: The binary is missing or cannot be executed.
    """
    cmd = [str(arg) for arg in argv]
    log.debug("ffmpeg_command", session_id=context.session_id, cmd=" ".join(cmd))

    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        log.error("ffmpeg_spawn_failed", session_id=context.session_id, error=str(e))
        raise SpawnError(f"Failed to start FFmpeg: {e}") from e

    log.info("ffmpeg_started", session_id=context.session_id, pid=process.pid)
    return attach_process(
        process,
        context,
        total_duration,
        termination_attempts=termination_attempts,
        termination_delay=termination_delay,
    )


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def _decode(raw: Union[str, bytes]) -> str:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return raw.rstrip("\r\n")


def monitor_process_with_progress(
    execution: ProcessExecution,
    context: ProcessingContext,
) -> MonitorOutcome:
    """Read ffmpeg's status stream until EOF, a cancel, or a fatal error.

    Raises:
        FFmpegExecutionError: A fatal marker appeared; the process is killed.
    """
    stream = execution.stream
    if stream is None:
        log.warning("ffmpeg_stderr_not_captured", session_id=context.session_id)
        return MonitorOutcome.COMPLETED

    for raw in stream:
        if check_cancellation_and_kill(execution, context):
            return MonitorOutcome.CANCELLED

        line = _decode(raw)
        try:
            handle_progress_line(execution, line)
        except FFmpegExecutionError:
            execution.guard.terminate()
            raise

    # ffmpeg may have finished between the last line and a cancel request
    if check_cancellation_and_kill(execution, context):
        return MonitorOutcome.CANCELLED
    return MonitorOutcome.COMPLETED


def check_cancellation_and_kill(execution: ProcessExecution, context: ProcessingContext) -> bool:
    """Kill the child if the session was cancelled.

    Returns:
        True if the merge was cancelled.
    """
    if not context.is_cancelled():
        return False

    log.info(
        "ffmpeg_cancelling",
        session_id=context.session_id,
        position=round(execution.last_progress_time, 2),
    )
    execution.guard.terminate()
    execution.cancelled = True
    return True


def handle_progress_line(execution: ProcessExecution, line: str) -> None:
    """Apply one status line: speed, position, completion and error markers.

    Raises:
        FFmpegExecutionError: The line carries a fatal error marker.
    """
    if not line.strip():
        return
    execution.stderr_tail.append(line)

    speed = parse_speed_multiplier(line)
    if speed is not None:
        execution.speed = speed

    if not execution.completed:
        position = parse_progress(line)
        if position is PROGRESS_END:
            execution.completed = True
            log.debug("ffmpeg_reported_end", position=round(execution.last_progress_time, 2))
            execution.emitter.emit_finalizing("Finalizing audio file...")
        elif isinstance(position, float) and position > execution.last_progress_time:
            _record_position(execution, position)

    check_error_markers(line)


def _record_position(execution: ProcessExecution, position: float) -> None:
    execution.last_progress_time = position
    execution.progress_count += 1

    update_time_estimation(execution)
    percentage = calculate_progress(execution)
    eta = calculate_eta(execution.estimated_total_time, position, execution.speed)
    execution.last_percentage = percentage

    execution.emitter.emit_converting_progress(percentage, CONVERTING_MESSAGE, eta_seconds=eta)
    if execution.progress_count % 50 == 0:
        log.debug(
            "ffmpeg_progress",
            position=round(position, 2),
            percentage=round(percentage, 1),
            eta=format_eta(eta) if eta is not None else None,
        )


def check_error_markers(line: str) -> None:
    """Raise on fatal markers; log other error mentions.

    Raises:
        FFmpegExecutionError: ``line`` contains a fatal marker.
    """
    if any(word in line for word in IGNORED_ERROR_CONTEXT):
        return

    lowered = line.lower()
    if any(marker in lowered for marker in FATAL_ERROR_MARKERS):
        log.error("ffmpeg_fatal_error", line=line)
        raise FFmpegExecutionError(f"FFmpeg failed to process audio files: {line}")

    if "error" in lowered:
        log.error("ffmpeg_error_line", line=line)


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------


def update_time_estimation(execution: ProcessExecution) -> None:
    """Refresh the estimated total duration after a new position.

    A known total is used as soon as it is available. Without one, nothing is
    estimated for the first MIN_UPDATES_FOR_ESTIMATE updates; after that the
    estimate is position * INITIAL_TIME_ESTIMATE_MULTIPLIER, pushed out again
    each time the position catches up with it.
    """
    position = execution.last_progress_time

    if execution.total_duration:
        execution.estimated_total_time = execution.total_duration
        return

    if execution.progress_count <= MIN_UPDATES_FOR_ESTIMATE:
        return

    if execution.estimated_total_time <= 0 or position >= execution.estimated_total_time:
        execution.estimated_total_time = position * INITIAL_TIME_ESTIMATE_MULTIPLIER
        log.debug(
            "ffmpeg_duration_estimated",
            position=round(position, 2),
            estimate=round(execution.estimated_total_time, 2),
        )


def calculate_progress(execution: ProcessExecution) -> float:
    """Converting-stage percentage for the current state, never below the last one."""
    if execution.estimated_total_time > 0:
        ratio = execution.last_progress_time / execution.estimated_total_time
    else:
        # No estimate yet: creep up to the ratio the first estimate starts at
        ratio = execution.progress_count / (
            MIN_UPDATES_FOR_ESTIMATE * INITIAL_TIME_ESTIMATE_MULTIPLIER
        )
    percentage = stage_percentage(Stage.CONVERTING, ratio)
    return max(percentage, execution.last_percentage)


def calculate_eta(
    estimated_total: float,
    position: float,
    speed: Optional[float],
) -> Optional[float]:
    """Seconds left at the current speed; None without a speed or when done."""
    if not speed or speed <= 0 or estimated_total <= 0:
        return None
    remaining = estimated_total - position
    if remaining <= 0:
        return None
    return remaining / speed


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


def finalize_process_execution(
    execution: ProcessExecution,
    outcome: MonitorOutcome,
    context: ProcessingContext,
) -> int:
    """Wait for ffmpeg and check how it exited.

    Raises:
        ProcessingCancelled: The merge was cancelled; nothing is waited on.
        FFmpegExecutionError: ffmpeg exited with a nonzero status.
    """
    if outcome is MonitorOutcome.CANCELLED or context.is_cancelled():
        log.info("ffmpeg_cancelled", session_id=context.session_id)
        raise ProcessingCancelled("Processing was cancelled by user before FFmpeg completion")

    returncode = execution.guard.wait()
    if returncode != 0:
        if returncode < 0:
            message = f"FFmpeg was terminated by signal {-returncode}"
        else:
            message = f"FFmpeg process failed during audio conversion (exit code: {returncode})"
        log.error(
            "ffmpeg_failed",
            session_id=context.session_id,
            exit_code=returncode,
            stderr_tail=list(execution.stderr_tail)[-5:],
        )
        raise FFmpegExecutionError(message, exit_code=returncode)

    log.info(
        "ffmpeg_completed",
        session_id=context.session_id,
        elapsed=round(execution.elapsed, 2),
        position=round(execution.last_progress_time, 2),
    )
    return returncode


def _close_streams(process: subprocess.Popen) -> None:
    for stream in (process.stdout, process.stderr):
        if stream is None:
            continue
        try:
            stream.close()
        except OSError:
            pass


def run_process_with_progress(execution: ProcessExecution, context: ProcessingContext) -> None:
    """Monitor and finalize an attached process; the child never outlives this call."""
    try:
        with execution.guard:
            outcome = monitor_process_with_progress(execution, context)
            finalize_process_execution(execution, outcome, context)
    finally:
        _close_streams(execution.process)


def run_with_progress(
    argv: Sequence[str],
    context: ProcessingContext,
    total_duration: Optional[float] = None,
    termination_attempts: int = PROCESS_TERMINATION_MAX_ATTEMPTS,
    termination_delay: float = PROCESS_TERMINATION_CHECK_DELAY_S,
) -> None:
    """Spawn ``argv``, stream its progress through ``context`` and wait for it.

    Raises:
        SpawnError: ffmpeg could not be started.
        FFmpegExecutionError: Fatal stream marker or nonzero exit.
        ProcessingCancelled: The session was cancelled mid-run.
    """
    execution = setup_process_execution(
        argv,
        context,
        total_duration,
        termination_attempts=termination_attempts,
        termination_delay=termination_delay,
    )
    run_process_with_progress(execution, context)
