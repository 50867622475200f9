"""Custom exception hierarchy for the transcription pipeline.

All exceptions inherit from PipelineError, enabling targeted handling
at pipeline boundaries while preserving specific failure context.
"""

from enum import StrEnum


class PipelineError(Exception):
    """Base exception for all transcription pipeline errors."""

    def __init__(self, message: str, recording_id: str | None = None) -> None:
        self.recording_id = recording_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.recording_id:
            return f"[recording={self.recording_id}] {super().__str__()}"
        return super().__str__()


class AudioFetchError(PipelineError):
    """Raised when the recorded clip cannot be loaded."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        source_ref: str | None = None,
    ) -> None:
        self.source_ref = source_ref
        super().__init__(message, recording_id)


class TranscodeError(PipelineError):
    """Raised when the audio cannot be decoded to PCM."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        input_path: str | None = None,
    ) -> None:
        self.input_path = input_path
        super().__init__(message, recording_id)


class TranscriptionError(PipelineError):
    """Raised when a speech backend fails to produce a transcript."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        backend: str | None = None,
    ) -> None:
        self.backend = backend
        super().__init__(message, recording_id)


class ConfigurationError(TranscriptionError):
    """Backend credentials are missing. Not retryable."""


class ProtocolError(TranscriptionError):
    """The backend sent a malformed or unexpected message."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        backend: str | None = None,
        code: int | None = None,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.status_code = status_code
        super().__init__(message, recording_id, backend)


class TransientNetworkError(TranscriptionError):
    """Connection drop, 5xx or rate limit that outlived its retry budget."""


class TranscriptionTimeout(TranscriptionError, TimeoutError):
    """The transcription deadline elapsed without a terminal result."""


class SubmitError(TranscriptionError):
    """An async transcription task could not be created."""


class TaskFailedError(TranscriptionError):
    """The backend reported the async transcription task as failed."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        backend: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.task_id = task_id
        super().__init__(message, recording_id, backend)


class AnnotationError(PipelineError):
    """Raised when the annotation collaborator cannot annotate a transcript."""


class StorageError(PipelineError):
    """Raised when recording persistence fails."""

    def __init__(
        self,
        message: str,
        recording_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message, recording_id)


class DuplicateRunKind(StrEnum):
    """Why a pipeline run was refused."""

    IN_PROGRESS = "in_progress"
    PROCESSED = "processed"


class DuplicateRunError(PipelineError):
    """The recording is already being processed or already processed.

    Callers treat this as an idempotent no-op and render it as a warning.
    Inspect ``kind`` rather than the message.
    """

    kind: DuplicateRunKind

    def __init__(self, recording_id: str, detail: str = "") -> None:
        message = f"recording is already {self.kind.value.replace('_', ' ')}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, recording_id)


class AlreadyInProgress(DuplicateRunError):
    """Another run for the same recording is in flight."""

    kind = DuplicateRunKind.IN_PROGRESS


class AlreadyProcessed(DuplicateRunError):
    """The recording has already been processed."""

    kind = DuplicateRunKind.PROCESSED
