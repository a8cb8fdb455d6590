"""Per-merge session: a unique id plus the processing/cancelled flags."""

import threading
import uuid

from m4bmerge.utils.logging import get_logger

log = get_logger(__name__)

# Status reads give up after this long rather than block the monitor loop
_LOCK_TIMEOUT_SECONDS = 0.5


class ProcessingSession:
    """Shared state for one merge operation.

    The cancelled flag is the only thing written from outside the monitor
    loop (by a cancel request); both flags are read from inside it. A status
    read that cannot take the lock reports False instead of raising.
    """

    def __init__(self, session_id: str | None = None):
        self._id = session_id or str(uuid.uuid4())
        self._lock = threading.Lock()
        self._processing = False
        self._cancelled = False

    @property
    def id(self) -> str:
        """Session identifier, also used to namespace temp paths."""
        return self._id

    def is_processing(self) -> bool:
        return self._read_flag("_processing")

    def is_cancelled(self) -> bool:
        return self._read_flag("_cancelled")

    def set_processing(self, processing: bool) -> None:
        """Mark the merge as started or stopped."""
        with self._lock:
            self._processing = processing
        log.debug("session_processing_changed", session_id=self._id, processing=processing)

    def cancel(self) -> None:
        """Request cancellation; observed by the monitor at the next line."""
        with self._lock:
            already = self._cancelled
            self._cancelled = True
        if not already:
            log.info("session_cancel_requested", session_id=self._id)

    def reset_cancellation(self) -> None:
        with self._lock:
            self._cancelled = False

    def _read_flag(self, name: str) -> bool:
        if not self._lock.acquire(timeout=_LOCK_TIMEOUT_SECONDS):
            log.warning("session_lock_unavailable", session_id=self._id, flag=name)
            return False
        try:
            return bool(getattr(self, name))
        finally:
            self._lock.release()

    def __repr__(self) -> str:
        return (
            f"ProcessingSession(id={self._id!r}, processing={self.is_processing()}, "
            f"cancelled={self.is_cancelled()})"
        )
