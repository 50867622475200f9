"""Process-local exclusion lock keyed by recording id.

The lock is ephemeral: a crash loses it. Durable coordination across
processes relies on the recording's persisted status instead.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from capture_processor.utils.errors import AlreadyInProgress

logger = logging.getLogger(__name__)


class ProcessingLock:
    """Set of recording ids currently in flight in this process.

    Acquisition never blocks: a second request for a held id fails fast
    with AlreadyInProgress so callers can tell "already running" from "slow".
    acquire() contains no suspension point, so check-and-add is atomic
    on the event loop.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def __contains__(self, recording_id: object) -> bool:
        return recording_id in self._held

    def __len__(self) -> int:
        return len(self._held)

    def acquire(self, recording_id: str) -> None:
        """Mark a recording as in flight.

        Raises:
            AlreadyInProgress: If the recording is already held.
        """
        if recording_id in self:
            logger.warning(
                "Recording %s is already being processed (locked)",
                recording_id,
                extra={"recording_id": recording_id},
            )
            raise AlreadyInProgress(recording_id, "process-local lock held")
        self._held.add(recording_id)
        logger.debug(
            "Locked recording %s (%d in flight)",
            recording_id,
            len(self),
            extra={"recording_id": recording_id},
        )

    def release(self, recording_id: str) -> None:
        """Remove a recording from the in-flight set. Idempotent."""
        self._held.discard(recording_id)

    @contextmanager
    def hold(self, recording_id: str) -> Iterator[None]:
        """Hold the lock for the duration of a block, releasing on any exit."""
        self.acquire(recording_id)
        try:
            yield
        finally:
            self.release(recording_id)
