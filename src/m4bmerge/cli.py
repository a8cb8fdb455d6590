"""Command-line entry point: ``m4bmerge merge FILE... -o OUT``."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from m4bmerge.merge.context import ProcessingContext
from m4bmerge.merge.errors import MergeError
from m4bmerge.merge.ffmpeg import locate_ffmpeg, locate_ffprobe, probe_audio_files
from m4bmerge.merge.pipeline import PROCESSORS, select_processor
from m4bmerge.merge.processor import process_audiobook
from m4bmerge.merge.progress import ProgressEvent, Stage, format_eta
from m4bmerge.merge.session import ProcessingSession
from m4bmerge.merge.settings import AudioSettings, ChannelConfig
from m4bmerge.utils.config import Config, load_config
from m4bmerge.utils.logging import get_logger, setup_logging

log = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


class ProgressLogger:
    """Progress sink that logs stage changes and each whole-percent step."""

    def __init__(self) -> None:
        self._last_stage: Optional[Stage] = None
        self._last_step = -1

    def __call__(self, event: ProgressEvent) -> None:
        step = int(event.percentage)
        if event.stage == self._last_stage and step == self._last_step:
            return
        self._last_stage = event.stage
        self._last_step = step
        log.info(
            "progress",
            stage=event.stage.value,
            percentage=round(event.percentage, 1),
            message=event.message,
            eta=format_eta(event.eta_seconds) if event.eta_seconds is not None else None,
        )


def settings_from_args(config: Config, args) -> AudioSettings:
    """Audio settings from the config file, overridden by command-line flags."""
    settings = AudioSettings.from_config(config.audio, audio_codec=config.ffmpeg.audio_codec)
    if args.output:
        settings.output_path = Path(args.output)
    if args.bitrate is not None:
        settings.bitrate = args.bitrate
    if args.channels:
        settings.channels = ChannelConfig(args.channels)
    if args.sample_rate:
        settings.sample_rate = None if args.sample_rate == "auto" else int(args.sample_rate)
    return settings


def run_merge(config: Config, args, session: ProcessingSession) -> int:
    """Probe the inputs and run one merge; returns the process exit code."""
    if args.processor:
        config.ffmpeg.processor = args.processor

    settings = settings_from_args(config, args)
    ffmpeg_binary = locate_ffmpeg(config.ffmpeg.binary)
    ffprobe_binary = locate_ffprobe(config.ffmpeg.probe_binary, ffmpeg_binary)
    processor = select_processor(config.ffmpeg, ffmpeg_binary)

    files = probe_audio_files(args.files, ffprobe_binary)
    context = ProcessingContext(sink=ProgressLogger(), session=session, settings=settings)

    result = asyncio.run(
        process_audiobook(
            context,
            files,
            processor=processor,
            temp_namespace=config.app.temp_namespace,
            temp_root=config.app.temp_root or None,
            keep_temp=args.keep_temp or config.app.keep_temp,
        )
    )

    if result.cancelled:
        print(result.message, file=sys.stderr)
        return EXIT_CANCELLED

    for warning in result.warnings:
        log.warning("merge_warning", warning=warning)
    log.debug("merge_summary", summary=result.summary)
    print(result.output_path)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the m4bmerge command."""
    import argparse

    parser = argparse.ArgumentParser(description="Merge audio files into one M4B audiobook")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override app.log_level (DEBUG, INFO, WARNING, ...)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    merge = subparsers.add_parser("merge", help="Merge input files into one audiobook")
    merge.add_argument("files", nargs="+", help="Input audio files, in playback order")
    merge.add_argument("--output", "-o", help="Output .m4b path")
    merge.add_argument("--bitrate", "-b", type=int, help="Output bitrate in kbps (32-128)")
    merge.add_argument("--channels", choices=[c.value for c in ChannelConfig])
    merge.add_argument("--sample-rate", help='Output sample rate in Hz, or "auto"')
    merge.add_argument("--processor", choices=sorted(PROCESSORS), help="Execution strategy")
    merge.add_argument(
        "--keep-temp",
        action="store_true",
        help="Leave the session temp directory in place for inspection",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(args.log_level or config.app.log_level)

    session = ProcessingSession()

    def signal_handler(signum, frame):
        log.info("received_signal", signal=signum, session_id=session.id)
        session.cancel()

    previous_int = signal.signal(signal.SIGINT, signal_handler)
    previous_term = signal.signal(signal.SIGTERM, signal_handler)
    try:
        return run_merge(config, args, session)
    except (MergeError, ValueError) as e:
        log.error("merge_command_failed", session_id=session.id, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        signal.signal(signal.SIGINT, previous_int)
        signal.signal(signal.SIGTERM, previous_term)


if __name__ == "__main__":
    sys.exit(main())
