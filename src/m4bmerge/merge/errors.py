"""Exception types raised by the merge pipeline."""

from pathlib import Path
from typing import Optional, Union


class MergeError(Exception):
    """Base class for every error the merge pipeline raises."""


class InvalidInputError(MergeError):
    """Inputs or settings were rejected before any work started."""


class FileValidationError(MergeError):
    """A file or directory needed by the merge could not be used."""


class BinaryNotFoundError(MergeError):
    """The ffmpeg (or ffprobe) binary could not be located."""

    def __init__(self, name: str = "ffmpeg"):
        super().__init__(
            f"{name} binary not found. Install ffmpeg or set ffmpeg.binary in the config"
        )
        self.name = name


class SpawnError(MergeError):
    """The transcoding subprocess could not be started."""


class FFmpegExecutionError(MergeError):
    """ffmpeg reported a fatal error or exited unsuccessfully."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class ProcessingCancelled(MergeError):
    """The user asked for the merge to stop.

    Kept separate from the failure types so callers can report a cancel as
    a cancel, not as an application error.
    """


class CleanupError(MergeError):
    """A tracked path could not be removed during an explicit cleanup."""

    def __init__(self, path: Union[str, Path], cause: OSError):
        super().__init__(f"Failed to remove {path}: {cause}")
        self.path = Path(path)
        self.cause = cause


class ProcessConsumedError(MergeError):
    """The guarded process was already waited on or terminated."""

    def __init__(self, description: str = ""):
        message = "Process already consumed"
        if description:
            message = f"{message}: {description}"
        super().__init__(message)
        self.description = description
