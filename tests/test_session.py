"""Tests for ProcessingSession flags and locking."""

import threading
from unittest.mock import patch

from structlog.testing import capture_logs

from m4bmerge.merge.session import ProcessingSession


def test_new_session_has_unique_id_and_clear_flags() -> None:
    first = ProcessingSession()
    second = ProcessingSession()

    assert first.id != second.id
    assert not first.is_processing()
    assert not first.is_cancelled()


def test_explicit_session_id_is_kept() -> None:
    assert ProcessingSession("abc-123").id == "abc-123"


def test_set_processing_and_cancel() -> None:
    session = ProcessingSession()

    session.set_processing(True)
    session.cancel()

    assert session.is_processing()
    assert session.is_cancelled()

    session.reset_cancellation()
    session.set_processing(False)
    assert not session.is_cancelled()
    assert not session.is_processing()


def test_cancel_logs_once() -> None:
    session = ProcessingSession()
    with capture_logs() as logs:
        session.cancel()
        session.cancel()

    cancel_logs = [entry for entry in logs if entry["event"] == "session_cancel_requested"]
    assert len(cancel_logs) == 1
    assert cancel_logs[0]["session_id"] == session.id


def test_status_read_reports_false_when_lock_is_held() -> None:
    """A status check that cannot take the lock degrades to False."""
    session = ProcessingSession()
    session.cancel()

    with patch("m4bmerge.merge.session._LOCK_TIMEOUT_SECONDS", 0.01):
        session._lock.acquire()
        try:
            assert session.is_cancelled() is False
        finally:
            session._lock.release()

    assert session.is_cancelled() is True


def test_cancel_from_another_thread_is_visible() -> None:
    session = ProcessingSession()
    thread = threading.Thread(target=session.cancel)
    thread.start()
    thread.join()

    assert session.is_cancelled()
