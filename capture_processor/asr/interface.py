"""Transcription engine interface and shared data models.

Both speech backends implement TranscriptionEngine and return the same
TranscriptionResult, so nothing protocol-specific leaks to callers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

BackendName = Literal["async", "streaming"]

DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class TranscriptionRequest:
    """One transcription job. Immutable once dispatched."""

    source_ref: str
    expected_speaker_count: int = 2
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    preferred_backend: BackendName | None = None


@dataclass
class DiarizedSegment:
    """A piece of text attributed to one speaker by the backend."""

    text: str
    speaker_id: int | None = None
    start_offset_ms: int = 0


@dataclass
class TranscriptionResult:
    """Backend-independent transcription outcome.

    partial=True marks non-empty text salvaged after an abnormal end
    (timeout, disconnect, transport error) of a streaming session.
    """

    text: str
    backend_used: BackendName
    partial: bool = False
    segments: list[DiarizedSegment] = field(default_factory=list)


class AsyncTaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AsyncTaskStatus.SUCCEEDED, AsyncTaskStatus.FAILED)


@dataclass
class AsyncTask:
    """A submitted job on the asynchronous backend."""

    task_id: str
    status: AsyncTaskStatus = AsyncTaskStatus.PENDING
    result_document_ref: str | None = None


class TranscriptionEngine(ABC):
    """Abstract base class for speech backends.

    Subclasses must implement is_configured and transcribe().
    """

    name: BackendName

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for this backend are present."""

    @abstractmethod
    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Transcribe the clip referenced by the request.

        Args:
            request: Source reference, speaker count hint and time budget.

        Returns:
            TranscriptionResult tagged with this backend's name.

        Raises:
            ConfigurationError: If credentials are missing.
            TranscriptionError: On any backend failure.
        """
