"""Tests for progress parsing, stage ranges and the emitter."""

import pytest

from m4bmerge.merge.progress import (
    PROGRESS_END,
    ProgressEmitter,
    ProgressEvent,
    Stage,
    calculate_stage_progress,
    format_eta,
    parse_ffmpeg_time,
    parse_progress,
    parse_speed_multiplier,
    stage_percentage,
)


# ---------------------------------------------------------------------------
# parse_progress
# ---------------------------------------------------------------------------


def test_out_time_us_is_microseconds() -> None:
    assert parse_progress("out_time_us=90450000") == pytest.approx(90.45)


def test_out_time_ms_is_also_microseconds() -> None:
    assert parse_progress("out_time_ms=2500000") == pytest.approx(2.5)


def test_progress_end_is_completion_marker() -> None:
    assert parse_progress("progress=end") is PROGRESS_END


def test_progress_continue_is_ignored() -> None:
    assert parse_progress("progress=continue") is None


def test_not_available_position_is_ignored() -> None:
    assert parse_progress("out_time_us=N/A") is None


def test_legacy_time_stats_line() -> None:
    line = "size=    1024kB time=00:01:30.45 bitrate=  92.7kbits/s speed=25.1x"
    assert parse_progress(line) == pytest.approx(90.45)


def test_position_exactly_100_seconds_is_a_position() -> None:
    result = parse_progress("out_time_us=100000000")
    assert result == pytest.approx(100.0)
    assert result is not PROGRESS_END


@pytest.mark.parametrize(
    "line",
    ["", "bitrate=  92.7kbits/s", "Stream #0:0: Audio: mp3", "total_size=1024"],
)
def test_unrelated_lines_have_no_position(line: str) -> None:
    assert parse_progress(line) is None


def test_parse_ffmpeg_time() -> None:
    assert parse_ffmpeg_time("01:02:03.5") == pytest.approx(3723.5)
    assert parse_ffmpeg_time("bad") is None
    assert parse_ffmpeg_time("aa:bb:cc") is None


def test_parse_speed_multiplier() -> None:
    assert parse_speed_multiplier("speed=1.5x") == pytest.approx(1.5)
    assert parse_speed_multiplier("time=00:00:01.00 speed= 25x") == pytest.approx(25.0)
    assert parse_speed_multiplier("speed=N/A") is None
    assert parse_speed_multiplier("out_time_us=1000") is None


# ---------------------------------------------------------------------------
# Stage ranges and ETA text
# ---------------------------------------------------------------------------


def test_calculate_stage_progress() -> None:
    assert calculate_stage_progress(5, 10, 10.0, 80.0) == pytest.approx(45.0)
    assert calculate_stage_progress(20, 10, 10.0, 80.0) == pytest.approx(80.0)
    assert calculate_stage_progress(5, 0, 10.0, 80.0) == pytest.approx(10.0)


def test_stage_percentage_respects_ranges() -> None:
    assert stage_percentage(Stage.ANALYZING, 0.5) == pytest.approx(5.0)
    assert stage_percentage(Stage.CONVERTING, 0.0) == pytest.approx(10.0)
    assert stage_percentage(Stage.CONVERTING, 0.5) == pytest.approx(45.0)
    assert stage_percentage(Stage.WRITING_METADATA, 1.0) == pytest.approx(95.0)
    assert stage_percentage(Stage.FAILED, 0.5) == 0.0


def test_converting_never_reaches_merging_start() -> None:
    assert stage_percentage(Stage.CONVERTING, 1.0) == pytest.approx(79.0)
    assert stage_percentage(Stage.CONVERTING, 5.0) == pytest.approx(79.0)


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (30, "30s"), (59.4, "59s"), (90, "1m 30s"), (3600, "60m 0s")],
)
def test_format_eta(seconds: float, expected: str) -> None:
    assert format_eta(seconds) == expected


# ---------------------------------------------------------------------------
# Events and emitter
# ---------------------------------------------------------------------------


def test_event_percentage_is_clamped() -> None:
    assert ProgressEvent(Stage.CONVERTING, 150.0, "x").percentage == 100.0
    assert ProgressEvent(Stage.CONVERTING, -3.0, "x").percentage == 0.0


def test_event_to_dict_uses_stage_name() -> None:
    event = ProgressEvent(Stage.WRITING_METADATA, 90.0, "Writing metadata...", eta_seconds=4.0)

    assert event.to_dict() == {
        "stage": "writing_metadata",
        "percentage": 90.0,
        "message": "Writing metadata...",
        "current_file": None,
        "eta_seconds": 4.0,
    }


def test_emitter_stage_helpers(sink) -> None:
    emitter = ProgressEmitter(sink)

    emitter.emit_analyzing_start("a")
    emitter.emit_analyzing_end("b")
    emitter.emit_converting_start("c")
    emitter.emit_metadata_start("d")
    emitter.emit_finalizing("e")
    emitter.emit_cleanup("f")
    emitter.emit_complete("g")

    assert sink.percentages == [0.0, 10.0, 10.0, 90.0, 95.0, 98.0, 100.0]
    assert sink.stages == [
        "analyzing",
        "analyzing",
        "converting",
        "writing_metadata",
        "writing_metadata",
        "completed",
        "completed",
    ]


def test_converting_progress_is_clamped(sink) -> None:
    ProgressEmitter(sink).emit_converting_progress(85.0, "too far")
    ProgressEmitter(sink).emit_converting_progress(2.0, "too early")

    assert sink.percentages == [79.0, 10.0]


def test_percentage_never_drops_within_a_stage(sink) -> None:
    emitter = ProgressEmitter(sink)

    emitter.emit_finalizing("Finalizing audio file...")
    emitter.emit_metadata_start("Writing metadata...")
    emitter.emit_cleanup("Cleaning up...")
    emitter.emit_failed("late failure", percentage=0.0)

    assert sink.percentages == [95.0, 95.0, 98.0, 0.0]
    assert sink.stages[:2] == ["writing_metadata", "writing_metadata"]


def test_failed_and_cancelled_are_distinct(sink) -> None:
    emitter = ProgressEmitter(sink)

    emitter.emit_failed("ffmpeg exploded")
    emitter.emit_cancelled("stopped")

    assert sink.stages == ["failed", "cancelled"]
    assert sink.events[0].message == "ffmpeg exploded"


def test_sink_errors_are_swallowed() -> None:
    def broken_sink(event: ProgressEvent) -> None:
        raise RuntimeError("window closed")

    emitter = ProgressEmitter(broken_sink)
    emitter.emit_complete("done")


def test_emitter_without_sink_is_silent() -> None:
    ProgressEmitter().emit_analyzing_start("nobody listening")
