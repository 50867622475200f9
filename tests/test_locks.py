"""Tests for the process-local processing lock."""

import pytest

from capture_processor.utils.errors import AlreadyInProgress, DuplicateRunKind
from capture_processor.utils.locks import ProcessingLock


class TestProcessingLock:
    def test_acquire_and_release(self) -> None:
        lock = ProcessingLock()
        lock.acquire("rec-1")
        assert "rec-1" in lock
        assert len(lock) == 1

        lock.release("rec-1")
        assert "rec-1" not in lock
        assert len(lock) == 0

    def test_second_acquire_fails_fast(self) -> None:
        lock = ProcessingLock()
        lock.acquire("rec-1")
        with pytest.raises(AlreadyInProgress) as exc_info:
            lock.acquire("rec-1")
        assert exc_info.value.kind is DuplicateRunKind.IN_PROGRESS
        assert exc_info.value.recording_id == "rec-1"

    def test_independent_ids(self) -> None:
        lock = ProcessingLock()
        lock.acquire("rec-1")
        lock.acquire("rec-2")
        assert len(lock) == 2

    def test_release_is_idempotent(self) -> None:
        lock = ProcessingLock()
        lock.release("never-held")
        lock.acquire("rec-1")
        lock.release("rec-1")
        lock.release("rec-1")
        assert len(lock) == 0

    def test_hold_releases_on_error(self) -> None:
        lock = ProcessingLock()
        with pytest.raises(RuntimeError):
            with lock.hold("rec-1"):
                assert "rec-1" in lock
                raise RuntimeError("boom")
        assert "rec-1" not in lock

    def test_separate_instances_do_not_share_state(self) -> None:
        first, second = ProcessingLock(), ProcessingLock()
        first.acquire("rec-1")
        second.acquire("rec-1")
        assert "rec-1" in first and "rec-1" in second
