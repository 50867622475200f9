"""In-process RecordingStore for local runs and tests.

Enforces the status transition rules so misuse fails loudly instead of
silently regressing a recording's status.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from capture_processor.collaborators import (
    ALLOWED_TRANSITIONS,
    PipelineRun,
    RecordingStatus,
    RecordingStore,
)
from capture_processor.utils.errors import StorageError

logger = logging.getLogger(__name__)


class InMemoryRecordingStore(RecordingStore):
    """Dictionary-backed recording store.

    Recordings must be registered with add_recording() first, mirroring the
    upload flow that creates rows upstream.
    """

    def __init__(self) -> None:
        self._runs: dict[str, PipelineRun] = {}
        self._results: dict[str, dict[str, Any]] = {}

    def add_recording(
        self,
        recording_id: str,
        status: RecordingStatus = RecordingStatus.PENDING,
    ) -> PipelineRun:
        run = PipelineRun(recording_id=recording_id, status=status)
        self._runs[recording_id] = run
        self._results[recording_id] = {}
        return run

    def result_fields(self, recording_id: str) -> dict[str, Any]:
        return dict(self._results.get(recording_id, {}))

    def _get(self, recording_id: str, operation: str) -> PipelineRun:
        run = self._runs.get(recording_id)
        if run is None:
            raise StorageError(
                "Unknown recording",
                recording_id=recording_id,
                operation=operation,
            )
        return run

    async def get_pipeline_run(self, recording_id: str) -> PipelineRun | None:
        run = self._runs.get(recording_id)
        if run is None:
            return None
        return PipelineRun(
            recording_id=run.recording_id,
            status=run.status,
            attempt_count=run.attempt_count,
            last_error_message=run.last_error_message,
        )

    async def update_recording_result(
        self, recording_id: str, fields: dict[str, Any]
    ) -> None:
        self._get(recording_id, "update_recording_result")
        self._results[recording_id].update(fields)

    async def update_recording_status(
        self,
        recording_id: str,
        status: RecordingStatus,
        error_message: str | None = None,
        attempt_count: int | None = None,
    ) -> None:
        run = self._get(recording_id, "update_recording_status")
        status = RecordingStatus(status)
        if status not in ALLOWED_TRANSITIONS[run.status]:
            raise StorageError(
                f"Illegal status transition {run.status.value} -> {status.value}",
                recording_id=recording_id,
                operation="update_recording_status",
            )

        run.status = status
        if attempt_count is not None:
            run.attempt_count = attempt_count
        if status is RecordingStatus.ERROR:
            run.last_error_message = error_message
        if status in (RecordingStatus.PROCESSED, RecordingStatus.ERROR):
            self._results[recording_id]["processed_at"] = datetime.now(UTC).isoformat()

        logger.debug(
            "Recording %s -> %s", recording_id, status.value,
            extra={"recording_id": recording_id},
        )
