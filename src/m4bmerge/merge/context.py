"""Execution context threaded through every merge stage."""

from dataclasses import dataclass, field
from typing import Optional

from m4bmerge.merge.progress import ProgressEmitter, ProgressEvent, ProgressSink
from m4bmerge.merge.session import ProcessingSession
from m4bmerge.merge.settings import AudioSettings


@dataclass(frozen=True)
class ProcessingContext:
    """Notification sink, session and settings for one merge.

    Stage functions take the context instead of the three pieces separately.
    Nothing here changes after construction apart from the session's flags.
    """

    sink: Optional[ProgressSink]
    session: ProcessingSession
    settings: AudioSettings
    emitter: ProgressEmitter = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "emitter", ProgressEmitter(self.sink))

    @property
    def session_id(self) -> str:
        return self.session.id

    def is_cancelled(self) -> bool:
        return self.session.is_cancelled()

    def is_processing(self) -> bool:
        return self.session.is_processing()

    def emit(self, event: ProgressEvent) -> None:
        """Send a pre-built event through the context's emitter."""
        self.emitter.emit_custom(
            event.stage,
            event.percentage,
            event.message,
            event.current_file,
            event.eta_seconds,
        )
