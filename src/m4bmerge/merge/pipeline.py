"""Merge plan and the processors that carry it out.

A processor turns a MediaProcessingPlan into a running ffmpeg child. Both
implementations hand the child to the same monitoring loop, so progress,
cancellation and cleanup behave identically whichever one is configured.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, TypeVar, Union

import ffmpeg

from m4bmerge.merge.cleanup import (
    PROCESS_TERMINATION_CHECK_DELAY_S,
    PROCESS_TERMINATION_MAX_ATTEMPTS,
)
from m4bmerge.merge.context import ProcessingContext
from m4bmerge.merge.errors import InvalidInputError, SpawnError
from m4bmerge.merge.ffmpeg import locate_ffmpeg
from m4bmerge.merge.models import AudioFile
from m4bmerge.merge.monitor import attach_process, run_process_with_progress, run_with_progress
from m4bmerge.merge.settings import DEFAULT_SAMPLE_RATE, AudioSettings
from m4bmerge.utils.config import FFmpegConfig
from m4bmerge.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class MediaProcessingPlan:
    """Everything needed to run one ffmpeg merge.

    ``settings.sample_rate`` should already be resolved; an automatic rate
    falls back to DEFAULT_SAMPLE_RATE here.
    """

    concat_file: Path
    output_path: Path
    settings: AudioSettings
    input_files: list[Path] = field(default_factory=list)
    total_duration: float = 0.0  # seconds, 0 when unknown

    @staticmethod
    def calculate_total_duration(files: Iterable[AudioFile]) -> float:
        """Sum the durations of the valid inputs."""
        return sum(f.duration or 0.0 for f in files if f.is_valid)

    @property
    def sample_rate(self) -> int:
        return self.settings.sample_rate or DEFAULT_SAMPLE_RATE

    def build_command(self, binary: Union[str, Path]) -> list[str]:
        """Full ffmpeg argv for this plan."""
        return [
            str(binary),
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(self.concat_file),
            "-vn",
            "-map",
            "0:a",
            "-map_metadata",
            "0",
            "-c:a",
            self.settings.audio_codec,
            "-b:a",
            f"{self.settings.bitrate}k",
            "-ar",
            str(self.sample_rate),
            "-ac",
            str(self.settings.channels.channel_count),
            "-progress",
            "pipe:2",
            "-nostats",
            "-y",
            str(self.output_path),
        ]

    async def execute(
        self,
        context: ProcessingContext,
        processor: Optional["MediaProcessor"] = None,
    ) -> Path:
        """Run the merge and return the path ffmpeg wrote.

        Raises:
            SpawnError, FFmpegExecutionError, ProcessingCancelled
        """
        if processor is None:
            processor = ShellFFmpegProcessor(locate_ffmpeg())

        log.info(
            "merge_plan_executing",
            session_id=context.session_id,
            processor=processor.name,
            inputs=len(self.input_files),
            total_duration=round(self.total_duration, 2),
            bitrate=self.settings.bitrate,
            sample_rate=self.sample_rate,
        )
        context.emitter.emit_converting_start("Converting and merging audio files...")
        await processor.execute(self, context)
        return self.output_path


class MediaProcessor(ABC):
    """Strategy that executes a MediaProcessingPlan under a context."""

    name = "base"

    def __init__(
        self,
        binary: Union[str, Path],
        termination_attempts: int = PROCESS_TERMINATION_MAX_ATTEMPTS,
        termination_delay: float = PROCESS_TERMINATION_CHECK_DELAY_S,
    ):
        """Initialise the processor.

        Args:
            binary: ffmpeg executable to run.
            termination_attempts: Polls after a kill before giving up.
            termination_delay: Seconds between those polls.
        """
        self.binary = Path(binary)
        self.termination_attempts = termination_attempts
        self.termination_delay = termination_delay

    @classmethod
    def from_config(cls, config: FFmpegConfig, binary: Union[str, Path]) -> "MediaProcessor":
        return cls(
            binary,
            termination_attempts=config.termination_attempts,
            termination_delay=config.termination_delay_ms / 1000.0,
        )

    @abstractmethod
    async def execute(self, plan: MediaProcessingPlan, context: ProcessingContext) -> None:
        """Run ``plan`` to completion.

        Raises:
            SpawnError: ffmpeg could not be started.
            FFmpegExecutionError: ffmpeg failed.
            ProcessingCancelled: The session was cancelled.
        """
        pass


async def run_in_worker(context: ProcessingContext, func: Callable[..., T], *args) -> T:
    """Run blocking ``func`` in a worker thread, outliving task cancellation.

    If the awaiting task is cancelled, the session is cancelled so the
    monitor kills ffmpeg, and the worker is awaited before CancelledError
    propagates. Temp paths are therefore never removed under a live child.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        log.info("merge_task_cancelled", session_id=context.session_id)
        context.session.cancel()
        while not worker.done():
            try:
                await asyncio.wait({worker})
            except asyncio.CancelledError:
                continue
        if not worker.cancelled() and worker.exception() is not None:
            log.debug(
                "worker_stopped",
                session_id=context.session_id,
                error=str(worker.exception()),
            )
        raise


class ShellFFmpegProcessor(MediaProcessor):
    """Runs the argv from ``plan.build_command`` as a subprocess."""

    name = "shell"

    async def execute(self, plan: MediaProcessingPlan, context: ProcessingContext) -> None:
        argv = plan.build_command(self.binary)
        await run_in_worker(
            context,
            run_with_progress,
            argv,
            context,
            plan.total_duration,
            self.termination_attempts,
            self.termination_delay,
        )


class FfmpegPythonProcessor(MediaProcessor):
    """Builds the same merge as an ffmpeg-python stream graph."""

    name = "ffmpeg-python"

    def build_stream(self, plan: MediaProcessingPlan):
        source = ffmpeg.input(str(plan.concat_file), f="concat", safe=0)
        return (
            ffmpeg.output(
                source.audio,
                str(plan.output_path),
                vn=None,
                map_metadata=0,
                ar=plan.sample_rate,
                ac=plan.settings.channels.channel_count,
                **{
                    "c:a": plan.settings.audio_codec,
                    "b:a": f"{plan.settings.bitrate}k",
                },
            )
            .global_args("-nostdin", "-progress", "pipe:2", "-nostats")
            .overwrite_output()
        )

    def compile(self, plan: MediaProcessingPlan) -> list[str]:
        return ffmpeg.compile(self.build_stream(plan), cmd=str(self.binary))

    def _start_and_monitor(self, plan: MediaProcessingPlan, context: ProcessingContext) -> None:
        stream = self.build_stream(plan)
        log.debug(
            "ffmpeg_command",
            session_id=context.session_id,
            cmd=" ".join(ffmpeg.compile(stream, cmd=str(self.binary))),
        )
        try:
            process = ffmpeg.run_async(stream, cmd=str(self.binary), pipe_stderr=True)
        except OSError as e:
            log.error("ffmpeg_spawn_failed", session_id=context.session_id, error=str(e))
            raise SpawnError(f"Failed to start FFmpeg: {e}") from e

        log.info("ffmpeg_started", session_id=context.session_id, pid=process.pid)
        execution = attach_process(
            process,
            context,
            plan.total_duration,
            termination_attempts=self.termination_attempts,
            termination_delay=self.termination_delay,
        )
        run_process_with_progress(execution, context)

    async def execute(self, plan: MediaProcessingPlan, context: ProcessingContext) -> None:
        await run_in_worker(context, self._start_and_monitor, plan, context)


PROCESSORS: dict[str, type[MediaProcessor]] = {
    ShellFFmpegProcessor.name: ShellFFmpegProcessor,
    FfmpegPythonProcessor.name: FfmpegPythonProcessor,
}


def select_processor(config: FFmpegConfig, binary: Union[str, Path]) -> MediaProcessor:
    """Instantiate the processor named by ``config.processor``.

    Raises:
        InvalidInputError: Unknown processor name.
    """
    try:
        processor_cls = PROCESSORS[config.processor]
    except KeyError:
        raise InvalidInputError(
            f"Unknown processor {config.processor!r}; choose from {sorted(PROCESSORS)}"
        ) from None
    return processor_cls.from_config(config, binary)
