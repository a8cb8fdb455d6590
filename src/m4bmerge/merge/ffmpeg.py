"""Locating ffmpeg/ffprobe, probing inputs and writing concat lists."""

import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from m4bmerge.merge.errors import (
    BinaryNotFoundError,
    FFmpegExecutionError,
    FileValidationError,
    InvalidInputError,
    SpawnError,
)
from m4bmerge.merge.models import AudioFile
from m4bmerge.utils.logging import get_logger

log = get_logger(__name__)

COMMON_BINARY_DIRS = (
    Path("/usr/local/bin"),
    Path("/opt/homebrew/bin"),
    Path("/usr/bin"),
)

PROBE_TIMEOUT_SECONDS = 30
VERSION_TIMEOUT_SECONDS = 10

# Characters that would break out of a single-quoted concat entry
_STRIPPED_CHARS = ("\r", "\n", "\0")


# ---------------------------------------------------------------------------
# Binary discovery
# ---------------------------------------------------------------------------


def _locate_binary(name: str, configured: str = "", sibling_of: Optional[Path] = None) -> Path:
    """Find an executable by explicit setting, sibling dir, PATH, then common dirs."""
    if configured:
        path = Path(configured).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return path
        found = shutil.which(configured)
        if found:
            return Path(found)
        log.warning("configured_binary_missing", binary=name, path=configured)

    if sibling_of is not None:
        candidate = sibling_of.parent / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate

    found = shutil.which(name)
    if found:
        return Path(found)

    for directory in COMMON_BINARY_DIRS:
        candidate = directory / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate

    raise BinaryNotFoundError(name)


def locate_ffmpeg(configured: str = "") -> Path:
    """Return the ffmpeg binary to run.

    Raises:
        BinaryNotFoundError: No usable ffmpeg was found.
    """
    path = _locate_binary("ffmpeg", configured)
    log.debug("ffmpeg_located", path=str(path))
    return path


def locate_ffprobe(configured: str = "", ffmpeg_binary: Optional[Path] = None) -> Path:
    """Return the ffprobe binary, preferring the one installed next to ffmpeg."""
    path = _locate_binary("ffprobe", configured, sibling_of=ffmpeg_binary)
    log.debug("ffprobe_located", path=str(path))
    return path


def parse_version(output: str) -> str:
    """Pull "ffmpeg version X" out of ``ffmpeg -version`` output.

    Raises:
        FFmpegExecutionError: The first line is not a version banner.
    """
    first_line = output.strip().splitlines()[0] if output.strip() else ""
    if not first_line.startswith("ffmpeg version"):
        raise FFmpegExecutionError(f"Invalid version output format: {first_line!r}")
    parts = first_line.split()
    return " ".join(parts[:3])


def ffmpeg_version(binary: Union[str, Path]) -> str:
    """Run ``<binary> -version`` and return the parsed version banner."""
    try:
        result = subprocess.run(
            [str(binary), "-version"],
            capture_output=True,
            text=True,
            timeout=VERSION_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise SpawnError(f"Failed to run {binary} -version: {e}") from e

    if result.returncode != 0:
        raise FFmpegExecutionError(
            f"{binary} -version exited with code {result.returncode}",
            exit_code=result.returncode,
        )
    return parse_version(result.stdout)


# ---------------------------------------------------------------------------
# Concat list
# ---------------------------------------------------------------------------


def escape_concat_path(path: str) -> str:
    """Make a path safe inside a single-quoted concat ``file`` entry.

    CR, LF and NUL are dropped; each ``'`` becomes ``'\\''`` (close quote,
    escaped quote, reopen).
    """
    for char in _STRIPPED_CHARS:
        path = path.replace(char, "")
    return path.replace("'", "'\\''")


def format_concat_file_line(path: Union[str, Path]) -> str:
    """Format one concat list entry for ``path`` (made absolute)."""
    absolute = Path(path).expanduser().absolute()
    try:
        absolute = absolute.resolve()
    except OSError:
        pass  # keep the unresolved absolute path
    return f"file '{escape_concat_path(str(absolute))}'\n"


def write_concat_file(paths: Iterable[Union[str, Path]], destination: Path) -> Path:
    """Write a concat list for ``paths`` in order.

    Raises:
        FileValidationError: The list could not be written.
    """
    content = "".join(format_concat_file_line(p) for p in paths)
    try:
        destination.write_text(content, encoding="utf-8")
    except OSError as e:
        raise FileValidationError(f"Cannot write concat file: {e}") from e
    log.debug("concat_file_written", path=str(destination), entries=content.count("\n"))
    return destination


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------


def _to_int(value) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(audio_file: AudioFile, payload: dict) -> AudioFile:
    """Fill ``audio_file`` from ffprobe's ``-show_format -show_streams`` JSON."""
    fmt = payload.get("format") or {}
    audio_stream = next(
        (s for s in payload.get("streams") or [] if s.get("codec_type") == "audio"),
        None,
    )
    if audio_stream is None:
        audio_file.error = "No audio stream found"
        return audio_file

    duration = _to_float(fmt.get("duration")) or _to_float(audio_stream.get("duration"))
    if not duration or duration <= 0:
        audio_file.error = "Could not determine duration"
        return audio_file

    audio_file.duration = duration
    audio_file.format = fmt.get("format_name") or audio_stream.get("codec_name")
    audio_file.bitrate = _to_int(audio_stream.get("bit_rate")) or _to_int(fmt.get("bit_rate"))
    audio_file.sample_rate = _to_int(audio_stream.get("sample_rate"))
    audio_file.channels = _to_int(audio_stream.get("channels"))
    audio_file.is_valid = True
    return audio_file


def probe_audio_file(path: Union[str, Path], ffprobe_binary: Union[str, Path]) -> AudioFile:
    """Describe one input file. Problems with the file end up in ``error``.

    Raises:
        SpawnError: ffprobe itself could not be run.
    """
    audio_file = AudioFile(path=Path(path))

    if not audio_file.path.exists():
        audio_file.error = f"File not found: {audio_file.path}"
        return audio_file

    try:
        audio_file.size = audio_file.path.stat().st_size
    except OSError as e:
        audio_file.error = f"Cannot read file metadata: {e}"
        return audio_file

    cmd = [
        str(ffprobe_binary),
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(audio_file.path),
    ]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        audio_file.error = "ffprobe timed out"
        return audio_file
    except OSError as e:
        raise SpawnError(f"Failed to run ffprobe: {e}") from e

    if result.returncode != 0:
        audio_file.error = result.stderr.strip() or f"ffprobe exited with code {result.returncode}"
        return audio_file

    try:
        payload = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        audio_file.error = f"Failed to parse ffprobe output: {e}"
        return audio_file

    return parse_probe_output(audio_file, payload)


def probe_audio_files(
    paths: Sequence[Union[str, Path]],
    ffprobe_binary: Union[str, Path],
) -> list[AudioFile]:
    """Probe every input, keeping order.

    Raises:
        InvalidInputError: ``paths`` is empty.
    """
    if not paths:
        raise InvalidInputError("No files provided for validation")

    files = [probe_audio_file(p, ffprobe_binary) for p in paths]
    for audio_file in files:
        if not audio_file.is_valid:
            log.warning("input_file_invalid", path=str(audio_file.path), error=audio_file.error)
    return files
