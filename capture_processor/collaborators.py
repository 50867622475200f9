"""Contracts for the services the pipeline depends on but does not own.

The annotation model, the reference vocabulary and the recording database
live outside this package; the orchestrator only sees these interfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

NO_SPEECH_SUMMARY = "无法识别语音内容"


class RecordingStatus(StrEnum):
    """Durable processing status of a recording."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


# error -> processing is the only transition out of a terminal state
ALLOWED_TRANSITIONS: dict[RecordingStatus, frozenset[RecordingStatus]] = {
    RecordingStatus.PENDING: frozenset({RecordingStatus.PROCESSING}),
    RecordingStatus.PROCESSING: frozenset(
        {RecordingStatus.PROCESSED, RecordingStatus.ERROR}
    ),
    RecordingStatus.PROCESSED: frozenset(),
    RecordingStatus.ERROR: frozenset({RecordingStatus.PROCESSING}),
}


@dataclass
class PipelineRun:
    """Durable processing record of one recording."""

    recording_id: str
    status: RecordingStatus = RecordingStatus.PENDING
    attempt_count: int = 0
    last_error_message: str | None = None


@dataclass
class Annotation:
    """Output of the annotation service.

    numeric_score is opaque: its scale belongs to the annotation service and
    it is persisted unchanged.
    """

    corrected_text: str
    summary: str
    structured_tags: dict[str, Any] = field(default_factory=dict)
    numeric_score: Any = None

    @classmethod
    def empty(cls) -> Annotation:
        """Annotation recorded when no speech was recognized."""
        return cls(corrected_text="", summary=NO_SPEECH_SUMMARY)


class ReferenceVocabulary(ABC):
    """Source of domain terms (menu items, staff names) used for correction."""

    @abstractmethod
    async def get_reference_terms(self) -> list[str]:
        """Return reference terms, most relevant first."""


class AnnotationService(ABC):
    """Language correction and tagging of a transcript.

    Implementations may return a documented fallback payload instead of
    raising when the model is unreachable; that payload is persisted as-is.
    """

    @abstractmethod
    async def annotate(self, transcript: str, reference_terms: list[str]) -> Annotation:
        """Correct and tag a transcript."""


class RecordingStore(ABC):
    """Persistence of recording status and results.

    The pipeline is the sole writer of transcript and annotation fields, but
    never creates or deletes recordings.
    """

    @abstractmethod
    async def get_pipeline_run(self, recording_id: str) -> PipelineRun | None:
        """Return the durable processing record, or None if unknown."""

    @abstractmethod
    async def update_recording_result(
        self, recording_id: str, fields: dict[str, Any]
    ) -> None:
        """Write transcript and annotation fields."""

    @abstractmethod
    async def update_recording_status(
        self,
        recording_id: str,
        status: RecordingStatus,
        error_message: str | None = None,
        attempt_count: int | None = None,
    ) -> None:
        """Move the recording to a new status."""
