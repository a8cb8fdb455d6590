"""Tests for logging setup and per-merge log context."""

import asyncio

import pytest
import structlog
from structlog.contextvars import get_contextvars, merge_contextvars

from m4bmerge.merge.pipeline import MediaProcessor, run_in_worker
from m4bmerge.merge.processor import process_audiobook
from m4bmerge.utils.logging import log_context, setup_logging


@pytest.fixture
def reset_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def test_setup_logging_merges_bound_context(reset_structlog) -> None:
    setup_logging("DEBUG")

    assert structlog.get_config()["processors"][0] is merge_contextvars


def test_log_context_binds_and_restores() -> None:
    with log_context(session_id="abc", output="book.m4b"):
        assert get_contextvars() == {"session_id": "abc", "output": "book.m4b"}
    assert "session_id" not in get_contextvars()


def test_merge_binds_session_id_for_worker_threads(context, audio_files, tmp_path) -> None:
    seen: list[dict] = []

    class ContextRecordingProcessor(MediaProcessor):
        name = "recording"

        async def execute(self, plan, context) -> None:
            await run_in_worker(context, lambda: seen.append(get_contextvars()))
            plan.output_path.write_bytes(b"merged audio")

    asyncio.run(
        process_audiobook(
            context,
            audio_files,
            processor=ContextRecordingProcessor("ffmpeg"),
            temp_root=tmp_path / "tmp",
        )
    )

    assert seen[0]["session_id"] == context.session_id
    assert seen[0]["output"] == str(context.settings.output_path)
    assert "session_id" not in get_contextvars()
