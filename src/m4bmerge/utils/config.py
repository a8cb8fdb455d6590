"""Configuration loading and validation."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml


@dataclass
class FFmpegConfig:
    """ffmpeg invocation configuration."""

    binary: str = ""  # empty = locate on PATH / common install dirs
    probe_binary: str = ""  # empty = ffprobe next to the ffmpeg binary
    audio_codec: str = "aac"
    processor: str = "shell"  # "shell" or "ffmpeg-python"
    termination_attempts: int = 20
    termination_delay_ms: int = 100


@dataclass
class AudioConfig:
    """Default output audio settings."""

    bitrate: int = 64  # kbps
    channels: str = "mono"
    sample_rate: Union[int, str] = "auto"  # Hz, or "auto" to follow the inputs
    output_path: str = "output.m4b"


@dataclass
class AppConfig:
    """Application configuration."""

    name: str = "m4bmerge"
    log_level: str = "INFO"
    temp_namespace: str = "m4bmerge"
    temp_root: str = ""  # empty = tempfile.gettempdir()
    keep_temp: bool = False


@dataclass
class Config:
    """Root configuration object."""

    app: AppConfig = field(default_factory=AppConfig)
    ffmpeg: FFmpegConfig = field(default_factory=FFmpegConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)


def _dict_to_dataclass(cls: type, data: dict[str, Any]) -> Any:
    """Recursively convert a dictionary to a dataclass instance."""
    if data is None:
        return cls()

    field_types = {f.name: f.type for f in cls.__dataclass_fields__.values()}
    kwargs = {}

    for key, value in data.items():
        if key not in field_types:
            continue

        field_type = field_types[key]

        # Handle nested dataclasses
        if hasattr(field_type, "__dataclass_fields__") and isinstance(value, dict):
            kwargs[key] = _dict_to_dataclass(field_type, value)
        else:
            kwargs[key] = value

    return cls(**kwargs)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to config file. If None, searches default locations.

    Returns:
        Config object with all settings.
    """
    search_paths = [
        Path(config_path) if config_path else None,
        Path("config/config.yaml"),
        Path("/etc/m4bmerge/config.yaml"),
        Path.home() / ".config" / "m4bmerge" / "config.yaml",
    ]

    config_file = None
    for path in search_paths:
        if path and path.exists():
            config_file = path
            break

    if config_file is None:
        # Return defaults if no config file found
        return Config()

    with open(config_file) as f:
        data = yaml.safe_load(f) or {}

    return Config(
        app=_dict_to_dataclass(AppConfig, data.get("app", {})),
        ffmpeg=_dict_to_dataclass(FFmpegConfig, data.get("ffmpeg", {})),
        audio=_dict_to_dataclass(AudioConfig, data.get("audio", {})),
    )
