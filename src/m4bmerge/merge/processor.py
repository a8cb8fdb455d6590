"""Top-level merge workflow: validate, plan, run ffmpeg, tag, move, clean up."""

import asyncio
import dataclasses
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from m4bmerge.merge.cleanup import CleanupGuard
from m4bmerge.merge.context import ProcessingContext
from m4bmerge.merge.errors import (
    CleanupError,
    FileValidationError,
    InvalidInputError,
    ProcessingCancelled,
)
from m4bmerge.merge.ffmpeg import write_concat_file
from m4bmerge.merge.metrics import ProcessingMetrics
from m4bmerge.merge.models import AudioFile, MergeResult
from m4bmerge.merge.pipeline import MediaProcessingPlan, MediaProcessor, run_in_worker
from m4bmerge.merge.settings import AudioSettings, detect_input_sample_rate, validate_audio_settings
from m4bmerge.utils.logging import get_logger, log_context

log = get_logger(__name__)

DEFAULT_TEMP_NAMESPACE = "m4bmerge"
TEMP_CONCAT_FILENAME = "concat.txt"
TEMP_MERGED_FILENAME = "merged.m4b"

# Writes tags/chapters into the merged file in place
MetadataWriter = Callable[[Path], None]


# ---------------------------------------------------------------------------
# Workspace helpers
# ---------------------------------------------------------------------------


def session_temp_dir(
    session_id: str,
    namespace: str = DEFAULT_TEMP_NAMESPACE,
    temp_root: Union[str, Path, None] = None,
) -> Path:
    """``<temp root>/<namespace>/<session id>``, without creating it."""
    root = Path(temp_root) if temp_root else Path(tempfile.gettempdir())
    return root / namespace / session_id


def create_session_temp_dir(
    session_id: str,
    namespace: str = DEFAULT_TEMP_NAMESPACE,
    temp_root: Union[str, Path, None] = None,
) -> Path:
    """Create the per-session working directory.

    Raises:
        FileValidationError: The directory could not be created.
    """
    temp_dir = session_temp_dir(session_id, namespace, temp_root)
    try:
        temp_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileValidationError(f"Cannot create session temp directory: {e}") from e
    log.debug("session_temp_dir_created", session_id=session_id, path=str(temp_dir))
    return temp_dir


def write_session_concat_file(files: Sequence[AudioFile], temp_dir: Path) -> Path:
    return write_concat_file((f.path for f in files), temp_dir / TEMP_CONCAT_FILENAME)


def move_to_final_location(temp_output: Path, final_path: Path) -> Path:
    """Move the merged file to where the user asked for it.

    Raises:
        FileValidationError: The move failed.
    """
    final_path = Path(final_path)
    try:
        final_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(temp_output), str(final_path))
    except OSError as e:
        raise FileValidationError(f"Cannot move file to final location: {e}") from e
    log.debug("output_moved", source=str(temp_output), destination=str(final_path))
    return final_path


def validate_processing_inputs(files: Sequence[AudioFile], settings: AudioSettings) -> None:
    """Raises InvalidInputError/FileValidationError for unusable inputs."""
    if not files:
        raise InvalidInputError("No files to process")

    for audio_file in files:
        if not audio_file.is_valid:
            raise FileValidationError(
                f"Invalid file: {audio_file.path} - {audio_file.error or 'Unknown error'}"
            )

    validate_audio_settings(settings)


def resolve_sample_rate(settings: AudioSettings, files: Sequence[AudioFile]) -> AudioSettings:
    """Settings with an automatic sample rate replaced by the inputs' usual rate."""
    if not settings.is_auto_sample_rate:
        return settings

    by_path = {f.path: f.sample_rate for f in files}
    rate = detect_input_sample_rate([f.path for f in files], by_path.get)
    log.info("sample_rate_auto_selected", sample_rate=rate)
    return dataclasses.replace(settings, sample_rate=rate)


def _check_cancelled(context: ProcessingContext) -> None:
    if context.is_cancelled():
        raise ProcessingCancelled("Processing was cancelled")


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


async def process_audiobook(
    context: ProcessingContext,
    files: Sequence[AudioFile],
    metadata_writer: Optional[MetadataWriter] = None,
    processor: Optional[MediaProcessor] = None,
    temp_namespace: str = DEFAULT_TEMP_NAMESPACE,
    temp_root: Union[str, Path, None] = None,
    keep_temp: bool = False,
) -> MergeResult:
    """Merge ``files`` into ``context.settings.output_path``.

    Progress goes to the context's sink. The session temp directory is
    removed on every exit path (unless ``keep_temp``) and the session's
    processing flag is cleared when this returns.

    Cancelling the awaiting task also cancels the session; ffmpeg is
    stopped before the temp directory is removed and CancelledError is
    re-raised.

    Returns:
        MergeResult, with ``cancelled=True`` if the session was cancelled.

    Raises:
        MergeError: Validation, ffmpeg or filesystem failure. A FAILED
            progress event is emitted first.
    """
    session = context.session
    with log_context(session_id=session.id, output=str(context.settings.output_path)):
        return await _process_in_session(
            context,
            files,
            metadata_writer=metadata_writer,
            processor=processor,
            temp_namespace=temp_namespace,
            temp_root=temp_root,
            keep_temp=keep_temp,
        )


async def _process_in_session(
    context: ProcessingContext,
    files: Sequence[AudioFile],
    metadata_writer: Optional[MetadataWriter],
    processor: Optional[MediaProcessor],
    temp_namespace: str,
    temp_root: Union[str, Path, None],
    keep_temp: bool,
) -> MergeResult:
    session = context.session
    emitter = context.emitter
    session.set_processing(True)
    log.info("merge_started", files=len(files))

    try:
        with CleanupGuard.from_context(context) as temp_guard:
            return await _run_merge(
                context,
                files,
                temp_guard,
                metadata_writer=metadata_writer,
                processor=processor,
                temp_namespace=temp_namespace,
                temp_root=temp_root,
                keep_temp=keep_temp,
            )
    except ProcessingCancelled:
        log.info("merge_cancelled")
        emitter.emit_cancelled("Processing was cancelled")
        return MergeResult(session_id=session.id, cancelled=True, files_merged=0)
    except asyncio.CancelledError:
        # run_in_worker has already waited for ffmpeg to exit
        session.cancel()
        log.info("merge_cancelled")
        emitter.emit_cancelled("Processing was cancelled")
        raise
    except Exception as e:
        log.error("merge_failed", error=str(e))
        emitter.emit_failed(str(e))
        raise
    finally:
        session.set_processing(False)


async def _run_merge(
    context: ProcessingContext,
    files: Sequence[AudioFile],
    temp_guard: CleanupGuard,
    metadata_writer: Optional[MetadataWriter],
    processor: Optional[MediaProcessor],
    temp_namespace: str,
    temp_root: Union[str, Path, None],
    keep_temp: bool,
) -> MergeResult:
    emitter = context.emitter
    metrics = ProcessingMetrics()

    # Analyze
    emitter.emit_analyzing_start("Analyzing input files...")
    validate_processing_inputs(files, context.settings)
    _check_cancelled(context)

    temp_dir = create_session_temp_dir(context.session_id, temp_namespace, temp_root)
    temp_guard.add_path(temp_dir)
    if keep_temp:
        temp_guard.disable_cleanup()

    concat_file = write_session_concat_file(files, temp_dir)
    plan = MediaProcessingPlan(
        concat_file=concat_file,
        output_path=temp_dir / TEMP_MERGED_FILENAME,
        settings=resolve_sample_rate(context.settings, files),
        input_files=[f.path for f in files],
        total_duration=MediaProcessingPlan.calculate_total_duration(files),
    )
    emitter.emit_analyzing_end(f"Analyzed {len(files)} files")
    _check_cancelled(context)

    # Convert
    merged_output = await plan.execute(context, processor)
    _check_cancelled(context)
    for audio_file in files:
        metrics.update_file_processed(audio_file.duration or 0.0, audio_file.size or 0)

    # Metadata
    if metadata_writer is not None:
        emitter.emit_metadata_start("Writing metadata...")
        await run_in_worker(context, metadata_writer, merged_output)
        _check_cancelled(context)

    # Finish
    emitter.emit_cleanup("Cleaning up...")
    final_output = move_to_final_location(merged_output, context.settings.output_path)

    warnings = []
    try:
        temp_guard.cleanup_now()
    except CleanupError as e:
        log.warning("temp_cleanup_incomplete", session_id=context.session_id, error=str(e))
        warnings.append(str(e))

    emitter.emit_complete("Processing complete")
    log.info("merge_complete", session_id=context.session_id, output=str(final_output), **metrics.as_dict())
    return MergeResult(
        session_id=context.session_id,
        output_path=final_output,
        duration_seconds=plan.total_duration,
        files_merged=len(files),
        summary=metrics.format_summary(),
        warnings=warnings,
    )
