"""Tests for the m4bmerge command line."""

import argparse
import signal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from m4bmerge import cli
from m4bmerge.merge.errors import BinaryNotFoundError
from m4bmerge.merge.models import MergeResult
from m4bmerge.merge.progress import ProgressEvent, Stage
from m4bmerge.merge.settings import ChannelConfig
from m4bmerge.utils.config import Config


def _args(**overrides) -> argparse.Namespace:
    values = dict(
        files=["a.mp3"],
        output=None,
        bitrate=None,
        channels=None,
        sample_rate=None,
        processor=None,
        keep_temp=False,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def test_settings_from_args_overrides_config() -> None:
    settings = cli.settings_from_args(
        Config(),
        _args(output="out/book.m4b", bitrate=96, channels="stereo", sample_rate="48000"),
    )

    assert settings.output_path == Path("out/book.m4b")
    assert settings.bitrate == 96
    assert settings.channels is ChannelConfig.STEREO
    assert settings.sample_rate == 48000


def test_settings_from_args_auto_rate() -> None:
    settings = cli.settings_from_args(Config(), _args(sample_rate="auto"))
    assert settings.sample_rate is None


def test_progress_logger_skips_repeats() -> None:
    progress_logger = cli.ProgressLogger()
    with patch.object(cli, "log") as mock_log:
        progress_logger(ProgressEvent(Stage.CONVERTING, 12.2, "x"))
        progress_logger(ProgressEvent(Stage.CONVERTING, 12.7, "x"))
        progress_logger(ProgressEvent(Stage.CONVERTING, 13.1, "x", eta_seconds=90))

    assert mock_log.info.call_count == 2
    assert mock_log.info.call_args.kwargs["eta"] == "1m 30s"


@pytest.fixture
def quiet_cli():
    with (
        patch.object(cli, "setup_logging"),
        patch.object(cli, "load_config", return_value=Config()),
    ):
        yield


def test_main_returns_failure_when_ffmpeg_missing(quiet_cli, capsys) -> None:
    previous = signal.getsignal(signal.SIGINT)
    with patch.object(cli, "locate_ffmpeg", side_effect=BinaryNotFoundError("ffmpeg")):
        code = cli.main(["merge", "a.mp3", "-o", "book.m4b"])

    assert code == cli.EXIT_FAILURE
    assert "ffmpeg binary not found" in capsys.readouterr().err
    assert signal.getsignal(signal.SIGINT) is previous


def _patched_run(result: MergeResult):
    async def fake_process(context, files, **kwargs):
        return result

    return (
        patch.object(cli, "locate_ffmpeg", return_value=Path("/usr/bin/ffmpeg")),
        patch.object(cli, "locate_ffprobe", return_value=Path("/usr/bin/ffprobe")),
        patch.object(cli, "probe_audio_files", return_value=[MagicMock()]),
        patch.object(cli, "process_audiobook", side_effect=fake_process),
    )


def test_main_success_prints_output(quiet_cli, capsys) -> None:
    result = MergeResult(session_id="s", output_path=Path("book.m4b"), files_merged=1)
    ffmpeg_patch, ffprobe_patch, probe_patch, run_patch = _patched_run(result)

    with ffmpeg_patch, ffprobe_patch, probe_patch, run_patch as mock_run:
        code = cli.main(["merge", "a.mp3", "-o", "book.m4b", "--keep-temp"])

    assert code == cli.EXIT_OK
    assert capsys.readouterr().out.strip().splitlines()[-1] == "book.m4b"
    assert mock_run.call_args.kwargs["keep_temp"] is True


def test_main_cancelled_exit_code(quiet_cli) -> None:
    result = MergeResult(session_id="s", cancelled=True)
    ffmpeg_patch, ffprobe_patch, probe_patch, run_patch = _patched_run(result)

    with ffmpeg_patch, ffprobe_patch, probe_patch, run_patch:
        code = cli.main(["merge", "a.mp3", "-o", "book.m4b"])

    assert code == cli.EXIT_CANCELLED
