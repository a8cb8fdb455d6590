"""Shared pytest fixtures for m4bmerge tests."""

import io
from pathlib import Path
from typing import Optional

import pytest

from m4bmerge.merge.context import ProcessingContext
from m4bmerge.merge.models import AudioFile
from m4bmerge.merge.progress import ProgressEvent
from m4bmerge.merge.session import ProcessingSession
from m4bmerge.merge.settings import AudioSettings


class FakeProcess:
    """Stands in for a subprocess.Popen running ffmpeg.

    stderr replays ``lines``; the process "exits" with ``returncode`` when
    waited on, or -9 once killed.
    """

    def __init__(self, lines: list[str], returncode: int = 0, pid: int = 4242):
        self.stderr: Optional[io.StringIO] = io.StringIO("".join(f"{line}\n" for line in lines))
        self.stdout = None
        self.pid = pid
        self.returncode: Optional[int] = None
        self.killed = False
        self.wait_calls = 0
        self._exit_code = returncode

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        self.wait_calls += 1
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


class RecordingSink:
    """Progress sink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    @property
    def percentages(self) -> list[float]:
        return [e.percentage for e in self.events]

    @property
    def stages(self) -> list[str]:
        return [e.stage.value for e in self.events]


@pytest.fixture
def session() -> ProcessingSession:
    return ProcessingSession()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def settings(tmp_path) -> AudioSettings:
    """Valid settings writing to tmp_path/book.m4b."""
    return AudioSettings(bitrate=64, sample_rate=44100, output_path=tmp_path / "book.m4b")


@pytest.fixture
def context(sink, session, settings) -> ProcessingContext:
    return ProcessingContext(sink=sink, session=session, settings=settings)


@pytest.fixture
def audio_files(tmp_path) -> list[AudioFile]:
    """Three small, already-probed input files."""
    files = []
    for index in range(3):
        path: Path = tmp_path / "inputs" / f"chapter{index + 1}.mp3"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00" * 1024)
        files.append(
            AudioFile(
                path=path,
                size=1024,
                duration=60.0,
                format="mp3",
                sample_rate=44100,
                channels=2,
                is_valid=True,
            )
        )
    return files
