"""Data classes passed between the merge stages."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class AudioFile:
    """One input file and what probing found out about it.

    ``is_valid`` is only set once a probe succeeded; ``error`` carries the
    reason otherwise.
    """

    path: Path
    size: Optional[int] = None  # bytes
    duration: Optional[float] = None  # seconds
    format: Optional[str] = None
    bitrate: Optional[int] = None  # bits per second
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    is_valid: bool = False
    error: Optional[str] = None

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class MergeResult:
    """Outcome of a merge that did not fail.

    A cancelled merge is reported here with ``cancelled=True`` and no output
    path; failures raise instead.
    """

    session_id: str
    output_path: Optional[Path] = None
    cancelled: bool = False
    duration_seconds: float = 0.0
    files_merged: int = 0
    summary: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.output_path is not None

    @property
    def message(self) -> str:
        if self.cancelled:
            return "Processing was cancelled"
        return f"Successfully created audiobook: {self.output_path}"
