"""Output audio settings and their validation."""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from m4bmerge.merge.errors import FileValidationError, InvalidInputError
from m4bmerge.utils.config import AudioConfig
from m4bmerge.utils.logging import get_logger

log = get_logger(__name__)

MIN_BITRATE_KBPS = 32
MAX_BITRATE_KBPS = 128
VALID_SAMPLE_RATES = (22050, 32000, 44100, 48000)
DEFAULT_SAMPLE_RATE = 22050
OUTPUT_EXTENSION = ".m4b"

# Sentinel for "use whatever the inputs mostly use"
AUTO_SAMPLE_RATE: Optional[int] = None


class ChannelConfig(str, Enum):
    """Output channel layout."""

    MONO = "mono"
    STEREO = "stereo"

    @property
    def channel_count(self) -> int:
        return 1 if self is ChannelConfig.MONO else 2

    @property
    def ffmpeg_layout(self) -> str:
        return self.value


@dataclass
class AudioSettings:
    """Encoding parameters for the merged output."""

    bitrate: int = 64  # kbps
    channels: ChannelConfig = ChannelConfig.MONO
    sample_rate: Optional[int] = AUTO_SAMPLE_RATE
    output_path: Path = field(default_factory=lambda: Path("output.m4b"))
    audio_codec: str = "aac"

    @property
    def is_auto_sample_rate(self) -> bool:
        return self.sample_rate is None

    @classmethod
    def from_config(cls, config: AudioConfig, audio_codec: str = "aac") -> "AudioSettings":
        """Build settings from the ``audio`` section of the YAML config."""
        sample_rate = config.sample_rate
        if isinstance(sample_rate, str):
            sample_rate = None if sample_rate.lower() == "auto" else int(sample_rate)
        return cls(
            bitrate=int(config.bitrate),
            channels=ChannelConfig(str(config.channels).lower()),
            sample_rate=sample_rate,
            output_path=Path(config.output_path),
            audio_codec=audio_codec,
        )


def validate_audio_settings(settings: AudioSettings) -> None:
    """Reject settings ffmpeg would choke on or that target a bad path.

    Raises:
        InvalidInputError: Bitrate, sample rate or extension out of range.
        FileValidationError: The output directory does not exist.
    """
    if not MIN_BITRATE_KBPS <= settings.bitrate <= MAX_BITRATE_KBPS:
        raise InvalidInputError(
            f"Bitrate must be between {MIN_BITRATE_KBPS}-{MAX_BITRATE_KBPS} kbps, "
            f"got: {settings.bitrate}"
        )

    if settings.sample_rate is not None and settings.sample_rate not in VALID_SAMPLE_RATES:
        raise InvalidInputError(
            f"Unsupported sample rate: {settings.sample_rate}. "
            f"Valid rates: {list(VALID_SAMPLE_RATES)}"
        )

    output = Path(settings.output_path)
    parent = output.parent
    if str(parent) and not parent.exists():
        raise FileValidationError(f"Output directory does not exist: {parent}")

    if output.suffix.lower() != OUTPUT_EXTENSION:
        found = output.suffix or "no extension"
        raise InvalidInputError(f"Output must be a {OUTPUT_EXTENSION} file, got: {found}")


def detect_input_sample_rate(
    file_paths: Sequence[Path],
    read_sample_rate: Callable[[Path], Optional[int]],
) -> int:
    """Return the most common sample rate among the inputs.

    Files whose rate cannot be read are skipped with a warning; ties go to
    the rate seen first.

    Raises:
        InvalidInputError: No inputs, or no input had a readable rate.
    """
    if not file_paths:
        raise InvalidInputError("Cannot detect sample rate: no input files provided")

    rates: Counter[int] = Counter()
    for path in file_paths:
        try:
            rate = read_sample_rate(Path(path))
        except Exception as e:
            log.warning("sample_rate_read_failed", path=str(path), error=str(e))
            continue
        if rate:
            rates[rate] += 1

    if not rates:
        raise InvalidInputError("Cannot detect sample rate: no valid audio files found")

    rate, count = rates.most_common(1)[0]
    log.debug("sample_rate_detected", sample_rate=rate, files=count, total=len(file_paths))
    return rate
