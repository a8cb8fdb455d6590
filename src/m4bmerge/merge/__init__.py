"""Merge module: ffmpeg-driven audiobook merging with progress and cancellation."""

from m4bmerge.merge.cleanup import CleanupGuard, ProcessGuard
from m4bmerge.merge.context import ProcessingContext
from m4bmerge.merge.models import AudioFile, MergeResult
from m4bmerge.merge.pipeline import (
    FfmpegPythonProcessor,
    MediaProcessingPlan,
    MediaProcessor,
    ShellFFmpegProcessor,
    select_processor,
)
from m4bmerge.merge.processor import process_audiobook
from m4bmerge.merge.progress import ProgressEmitter, ProgressEvent, Stage
from m4bmerge.merge.session import ProcessingSession
from m4bmerge.merge.settings import AudioSettings, ChannelConfig

__all__ = [
    "AudioFile",
    "AudioSettings",
    "ChannelConfig",
    "CleanupGuard",
    "FfmpegPythonProcessor",
    "MediaProcessingPlan",
    "MediaProcessor",
    "MergeResult",
    "ProcessGuard",
    "ProcessingContext",
    "ProcessingSession",
    "ProgressEmitter",
    "ProgressEvent",
    "ShellFFmpegProcessor",
    "Stage",
    "process_audiobook",
    "select_processor",
]
