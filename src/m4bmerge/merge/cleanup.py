"""Scoped cleanup of temp paths and of the ffmpeg child process.

Both guards are context managers. Leaving the ``with`` block releases
whatever is still tracked and only logs failures; the explicit calls
(``CleanupGuard.cleanup_now``, ``ProcessGuard.terminate``) share the same
release code but let the caller see what went wrong.

Usage::

    with CleanupGuard(session.id) as temp_guard:
        temp_guard.add_path(session_dir)
        with ProcessGuard(proc, session.id, "ffmpeg merge") as proc_guard:
            ...
            returncode = proc_guard.wait()
"""

from __future__ import annotations

import shutil
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, Optional, Union

from m4bmerge.merge.errors import CleanupError, ProcessConsumedError
from m4bmerge.utils.logging import get_logger

if TYPE_CHECKING:
    from m4bmerge.merge.context import ProcessingContext

log = get_logger(__name__)

PROCESS_TERMINATION_MAX_ATTEMPTS = 20
PROCESS_TERMINATION_CHECK_DELAY_S = 0.1

PathLike = Union[str, Path]


def kill_process(
    process: subprocess.Popen,
    max_attempts: int = PROCESS_TERMINATION_MAX_ATTEMPTS,
    check_delay: float = PROCESS_TERMINATION_CHECK_DELAY_S,
    **log_context,
) -> bool:
    """Kill a child and poll until it is reaped or the budget runs out.

    Returns:
        True if the process reported an exit status within the budget.
    """
    try:
        process.kill()
    except ProcessLookupError:
        pass  # already gone
    except OSError as e:
        log.warning("process_kill_failed", error=str(e), **log_context)

    for _ in range(max_attempts):
        if process.poll() is not None:
            log.debug("process_terminated", returncode=process.returncode, **log_context)
            return True
        time.sleep(check_delay)

    if process.poll() is not None:
        return True

    log.warning(
        "process_termination_timeout",
        pid=process.pid,
        waited_seconds=round(max_attempts * check_delay, 2),
        **log_context,
    )
    return False


class CleanupGuard:
    """Tracks temp files/directories and removes them when released.

    Paths are deduplicated. Missing paths count as already clean and
    directories are removed recursively. Removal keeps going past failures.
    """

    def __init__(self, session_id: str):
        self._session_id = session_id
        self._paths: set[Path] = set()
        self.enabled = True
        log.debug("cleanup_guard_created", session_id=session_id)

    @classmethod
    def from_context(cls, context: "ProcessingContext") -> "CleanupGuard":
        return cls(context.session_id)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def paths(self) -> frozenset[Path]:
        return frozenset(self._paths)

    def path_count(self) -> int:
        return len(self._paths)

    def add_path(self, path: PathLike) -> None:
        path = Path(path)
        self._paths.add(path)
        log.debug("cleanup_path_added", session_id=self._session_id, path=str(path))

    def add_paths(self, paths: Iterable[PathLike]) -> None:
        for path in paths:
            self.add_path(path)

    def remove_path(self, path: PathLike) -> bool:
        """Stop tracking a path (e.g. to keep an artifact for debugging).

        Returns:
            True if the path was being tracked.
        """
        path = Path(path)
        if path not in self._paths:
            return False
        self._paths.discard(path)
        log.debug("cleanup_path_removed", session_id=self._session_id, path=str(path))
        return True

    def disable_cleanup(self) -> None:
        """Leave tracked paths on disk, for inspecting a failed run."""
        self.enabled = False
        log.debug("cleanup_disabled", session_id=self._session_id)

    def enable_cleanup(self) -> None:
        self.enabled = True
        log.debug("cleanup_enabled", session_id=self._session_id)

    def cleanup_now(self) -> None:
        """Remove every tracked path and stop tracking them.

        Raises:
            CleanupError: The first removal failure, after all paths were tried.
        """
        if not self.enabled:
            log.debug("cleanup_skipped_disabled", session_id=self._session_id)
            return

        paths = self._drain()
        log.debug("cleanup_started", session_id=self._session_id, paths=len(paths))
        self._perform_cleanup(paths)

    def close(self) -> None:
        """Scope-exit release: same removal pass, failures only logged."""
        if not self.enabled:
            if self._paths:
                log.info(
                    "cleanup_skipped_disabled",
                    session_id=self._session_id,
                    kept=sorted(str(p) for p in self._paths),
                )
            return
        if not self._paths:
            return

        paths = self._drain()
        try:
            self._perform_cleanup(paths)
        except CleanupError as e:
            log.error("cleanup_failed_on_release", session_id=self._session_id, error=str(e))

    def __enter__(self) -> "CleanupGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _drain(self) -> list[Path]:
        paths = sorted(self._paths)
        self._paths.clear()
        return paths

    def _perform_cleanup(self, paths: list[Path]) -> None:
        first_error: Optional[CleanupError] = None

        for path in paths:
            try:
                self._cleanup_single_path(path)
            except OSError as e:
                log.error(
                    "cleanup_path_failed",
                    session_id=self._session_id,
                    path=str(path),
                    error=str(e),
                )
                if first_error is None:
                    first_error = CleanupError(path, e)

        if first_error is not None:
            raise first_error
        log.debug("cleanup_complete", session_id=self._session_id, paths=len(paths))

    def _cleanup_single_path(self, path: Path) -> None:
        if not path.exists() and not path.is_symlink():
            log.debug("cleanup_path_already_gone", session_id=self._session_id, path=str(path))
            return

        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            pass  # removed underneath us


class ProcessGuard:
    """Owns one child process and guarantees it is terminated.

    The handle sits behind a lock so monitoring code can look at it through
    ``process_handle()``. Exactly one ``wait()`` or ``terminate()`` takes the
    handle; after that ``terminate()`` is a no-op and ``wait()`` raises
    ProcessConsumedError.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        session_id: str,
        description: str,
        max_attempts: int = PROCESS_TERMINATION_MAX_ATTEMPTS,
        check_delay: float = PROCESS_TERMINATION_CHECK_DELAY_S,
    ):
        self._process: Optional[subprocess.Popen] = process
        self._lock = threading.Lock()
        self._session_id = session_id
        self._description = description
        self.max_attempts = max_attempts
        self.check_delay = check_delay
        self.enabled = True
        log.debug(
            "process_guard_created",
            session_id=session_id,
            description=description,
            pid=getattr(process, "pid", None),
        )

    @classmethod
    def from_context(
        cls,
        process: subprocess.Popen,
        context: "ProcessingContext",
        description: str,
        **kwargs,
    ) -> "ProcessGuard":
        return cls(process, context.session_id, description, **kwargs)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def description(self) -> str:
        return self._description

    @property
    def is_consumed(self) -> bool:
        with self._lock:
            return self._process is None

    @contextmanager
    def process_handle(self) -> Iterator[Optional[subprocess.Popen]]:
        """Lock the handle and yield it (None once consumed)."""
        with self._lock:
            yield self._process

    def wait(self) -> int:
        """Block until the process exits and return its exit code.

        Raises:
            ProcessConsumedError: wait() or terminate() already took the handle.
        """
        with self._lock:
            process = self._process
            self._process = None

        if process is None:
            raise ProcessConsumedError(self._description)

        log.debug(
            "process_wait_started",
            session_id=self._session_id,
            description=self._description,
        )
        returncode = process.wait()
        log.debug(
            "process_wait_complete",
            session_id=self._session_id,
            description=self._description,
            returncode=returncode,
        )
        return returncode

    def terminate(self) -> None:
        """Kill the process and drop the handle; a no-op once consumed.

        Disabling termination only affects scope exit, not this call.
        """
        with self._lock:
            process = self._process
            if process is None:
                log.debug(
                    "process_already_consumed",
                    session_id=self._session_id,
                    description=self._description,
                )
                return

            log.debug(
                "process_terminating",
                session_id=self._session_id,
                description=self._description,
                pid=process.pid,
            )
            kill_process(
                process,
                self.max_attempts,
                self.check_delay,
                session_id=self._session_id,
                description=self._description,
            )
            self._process = None

    def disable_termination(self) -> None:
        self.enabled = False
        log.debug("process_termination_disabled", session_id=self._session_id)

    def enable_termination(self) -> None:
        self.enabled = True
        log.debug("process_termination_enabled", session_id=self._session_id)

    def close(self) -> None:
        """Scope-exit release: terminate, logging instead of raising."""
        if not self.enabled:
            return
        try:
            self.terminate()
        except Exception as e:
            log.error(
                "process_termination_failed_on_release",
                session_id=self._session_id,
                description=self._description,
                error=str(e),
            )

    def __enter__(self) -> "ProcessGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
