"""Recording pipeline orchestrator.

Drives one recording from "uploaded" to "annotated and persisted" at most
once: lock -> duplicate check -> mark processing -> transcribe -> clean up
-> reference vocabulary -> annotate -> persist -> mark processed.

Any failure marks the recording as "error" with a readable message and is
re-raised; cancellation is neither retried nor recorded as an error and
leaves the "processing" marker for the recovery sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from capture_processor.asr.gateway import TranscriptionGateway
from capture_processor.asr.interface import (
    DEFAULT_TIMEOUT_SECONDS,
    BackendName,
    TranscriptionRequest,
    TranscriptionResult,
)
from capture_processor.asr.postprocess import collapse_repeats
from capture_processor.collaborators import (
    Annotation,
    AnnotationService,
    PipelineRun,
    RecordingStatus,
    RecordingStore,
    ReferenceVocabulary,
)
from capture_processor.observability.metrics import (
    RunMetrics,
    StageTimer,
    failed_stage,
    log_run_metrics,
)
from capture_processor.utils.errors import (
    AlreadyInProgress,
    AlreadyProcessed,
    AnnotationError,
)
from capture_processor.utils.locks import ProcessingLock
from capture_processor.utils.retry import retry_async

logger = logging.getLogger(__name__)

DEFAULT_ANNOTATION_ATTEMPTS = 3
DEFAULT_ANNOTATION_RETRY_DELAY_SECONDS = 2.0
DEFAULT_MAX_REFERENCE_TERMS = 100


@dataclass
class ProcessingResult:
    """Outcome of a completed pipeline run."""

    recording_id: str
    status: RecordingStatus
    raw_transcript: str
    cleaned_transcript: str
    annotation: Annotation
    backend_used: str
    partial: bool
    speech_detected: bool
    metrics: RunMetrics


class PipelineOrchestrator:
    """Coordinates transcription, annotation and persistence of recordings.

    Args:
        gateway: Transcription entry point.
        annotator: External correction/tagging service.
        vocabulary: Source of reference terms for the annotator, or None.
        store: Recording persistence.
        lock: Process-local in-flight set, shared by every orchestrator that
            processes the same kind of recording.
        annotation_attempts: Total attempts for the annotation call.
        annotation_retry_delay: Fixed seconds between annotation attempts.
        max_reference_terms: Cap on terms forwarded to the annotator.
    """

    def __init__(
        self,
        gateway: TranscriptionGateway,
        annotator: AnnotationService,
        vocabulary: ReferenceVocabulary | None,
        store: RecordingStore,
        lock: ProcessingLock,
        annotation_attempts: int = DEFAULT_ANNOTATION_ATTEMPTS,
        annotation_retry_delay: float = DEFAULT_ANNOTATION_RETRY_DELAY_SECONDS,
        max_reference_terms: int = DEFAULT_MAX_REFERENCE_TERMS,
    ) -> None:
        if annotation_attempts < 1:
            raise ValueError("annotation_attempts must be at least 1")
        self._gateway = gateway
        self._annotator = annotator
        self._store = store
        self._lock = lock
        self._vocabulary = vocabulary
        self._annotation_attempts = annotation_attempts
        self._annotation_retry_delay = annotation_retry_delay
        self._max_reference_terms = max_reference_terms

    async def process_recording(
        self,
        recording_id: str,
        source_ref: str,
        expected_speaker_count: int = 2,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        preferred_backend: BackendName | None = None,
    ) -> ProcessingResult:
        """Transcribe, annotate and persist one recording.

        Args:
            recording_id: Identifier of the recording row.
            source_ref: URL or path of the recorded clip.
            expected_speaker_count: Diarization hint (2 for visits, 4 for meetings).
            timeout_seconds: Transcription time budget.
            preferred_backend: Optional backend override.

        Returns:
            ProcessingResult of the run.

        Raises:
            AlreadyInProgress: Another run for this recording is in flight.
            AlreadyProcessed: The recording was already processed.
            PipelineError: Any failure after the run started (already
                persisted as status "error").
        """
        with self._lock.hold(recording_id):
            run = await self._store.get_pipeline_run(recording_id)
            self._check_not_duplicate(recording_id, run)
            request = TranscriptionRequest(
                source_ref=source_ref,
                expected_speaker_count=expected_speaker_count,
                timeout_seconds=timeout_seconds,
                preferred_backend=preferred_backend,
            )
            attempt_count = (run.attempt_count if run else 0) + 1
            return await self._run(recording_id, request, attempt_count)

    @staticmethod
    def _check_not_duplicate(recording_id: str, run: PipelineRun | None) -> None:
        if run is None:
            return
        if run.status is RecordingStatus.PROCESSING:
            logger.warning(
                "Recording %s already has status: processing", recording_id,
                extra={"recording_id": recording_id},
            )
            raise AlreadyInProgress(recording_id, "durable status is processing")
        if run.status is RecordingStatus.PROCESSED:
            logger.warning(
                "Recording %s already has status: processed", recording_id,
                extra={"recording_id": recording_id},
            )
            raise AlreadyProcessed(recording_id)

    async def _run(
        self,
        recording_id: str,
        request: TranscriptionRequest,
        attempt_count: int,
    ) -> ProcessingResult:
        wall_start = time.monotonic()
        timings: dict[str, float] = {}
        log_extra = {"recording_id": recording_id}

        try:
            await self._store.update_recording_status(
                recording_id,
                RecordingStatus.PROCESSING,
                attempt_count=attempt_count,
            )
            logger.info(
                "Pipeline started (attempt %d)", attempt_count, extra=log_extra
            )

            with StageTimer("transcribe", timings):
                transcription = await self._gateway.transcribe(request)
            raw_transcript = transcription.text
            logger.info(
                "Transcription finished: %d chars via %s%s",
                len(raw_transcript),
                transcription.backend_used,
                " (partial)" if transcription.partial else "",
                extra={**log_extra, "backend": transcription.backend_used},
            )

            if not raw_transcript.strip():
                return await self._finish_without_speech(
                    recording_id, transcription, attempt_count, timings, wall_start
                )

            with StageTimer("cleanup", timings):
                cleaned = collapse_repeats(raw_transcript)
            logger.info(
                "Cleanup: %d chars -> %d chars",
                len(raw_transcript),
                len(cleaned),
                extra=log_extra,
            )

            with StageTimer("vocabulary", timings):
                terms = await self._reference_terms(recording_id)

            with StageTimer("annotate", timings):
                annotation = await self._annotate(recording_id, cleaned, terms)

            with StageTimer("persist", timings):
                await self._store.update_recording_result(
                    recording_id,
                    self._result_fields(raw_transcript, annotation, transcription),
                )
                await self._store.update_recording_status(
                    recording_id, RecordingStatus.PROCESSED
                )

        except asyncio.CancelledError:
            logger.warning("Pipeline cancelled", extra=log_extra)
            raise
        except Exception as exc:
            error_message = str(exc) or type(exc).__name__
            logger.error(
                "Pipeline failed: %s",
                error_message,
                exc_info=True,
                extra={**log_extra, "stage": failed_stage(timings), "error": error_message},
            )
            await self._persist_error(recording_id, error_message)
            log_run_metrics(
                RunMetrics(
                    recording_id=recording_id,
                    status=RecordingStatus.ERROR.value,
                    processing_wall_time_seconds=time.monotonic() - wall_start,
                    attempt_count=attempt_count,
                    stage_timings=timings,
                    error_stage=failed_stage(timings) or "status_update",
                    error_message=error_message,
                )
            )
            raise

        metrics = RunMetrics(
            recording_id=recording_id,
            status=RecordingStatus.PROCESSED.value,
            processing_wall_time_seconds=time.monotonic() - wall_start,
            backend_used=transcription.backend_used,
            partial=transcription.partial,
            speech_detected=True,
            raw_transcript_chars=len(raw_transcript),
            cleaned_transcript_chars=len(cleaned),
            reference_terms_count=len(terms),
            attempt_count=attempt_count,
            stage_timings=timings,
        )
        log_run_metrics(metrics)
        logger.info(
            "Pipeline completed (%.1fs)",
            metrics.processing_wall_time_seconds,
            extra={**log_extra, "duration_seconds": metrics.processing_wall_time_seconds},
        )

        return ProcessingResult(
            recording_id=recording_id,
            status=RecordingStatus.PROCESSED,
            raw_transcript=raw_transcript,
            cleaned_transcript=cleaned,
            annotation=annotation,
            backend_used=transcription.backend_used,
            partial=transcription.partial,
            speech_detected=True,
            metrics=metrics,
        )

    async def _finish_without_speech(
        self,
        recording_id: str,
        transcription: TranscriptionResult,
        attempt_count: int,
        timings: dict[str, float],
        wall_start: float,
    ) -> ProcessingResult:
        """Record an empty transcript as a valid, processed outcome."""
        logger.warning(
            "No speech recognized, skipping annotation",
            extra={"recording_id": recording_id},
        )
        annotation = Annotation.empty()
        empty = TranscriptionResult(
            text="",
            backend_used=transcription.backend_used,
            partial=transcription.partial,
        )
        with StageTimer("persist", timings):
            await self._store.update_recording_result(
                recording_id, self._result_fields("", annotation, empty)
            )
            await self._store.update_recording_status(
                recording_id, RecordingStatus.PROCESSED
            )

        metrics = RunMetrics(
            recording_id=recording_id,
            status=RecordingStatus.PROCESSED.value,
            processing_wall_time_seconds=time.monotonic() - wall_start,
            backend_used=transcription.backend_used,
            partial=transcription.partial,
            speech_detected=False,
            attempt_count=attempt_count,
            stage_timings=timings,
        )
        log_run_metrics(metrics)

        return ProcessingResult(
            recording_id=recording_id,
            status=RecordingStatus.PROCESSED,
            raw_transcript="",
            cleaned_transcript="",
            annotation=annotation,
            backend_used=transcription.backend_used,
            partial=transcription.partial,
            speech_detected=False,
            metrics=metrics,
        )

    async def _reference_terms(self, recording_id: str) -> list[str]:
        """Fetch reference terms best-effort, deduplicated and capped."""
        if self._vocabulary is None:
            return []
        try:
            terms = await self._vocabulary.get_reference_terms()
        except Exception:
            logger.warning(
                "Reference vocabulary unavailable, annotating without it",
                exc_info=True,
                extra={"recording_id": recording_id},
            )
            return []

        unique = list(dict.fromkeys(t.strip() for t in terms if t and t.strip()))
        return unique[: self._max_reference_terms]

    async def _annotate(
        self, recording_id: str, transcript: str, terms: list[str]
    ) -> Annotation:
        """Call the annotation service with a fixed number of attempts.

        Raises:
            AnnotationError: If every attempt failed.
        """
        try:
            return await retry_async(
                self._annotator.annotate,
                transcript,
                terms,
                max_retries=self._annotation_attempts - 1,
                base_delay=self._annotation_retry_delay,
                max_delay=self._annotation_retry_delay,
                multiplier=1.0,
            )
        except Exception as exc:
            raise AnnotationError(
                f"Annotation failed after {self._annotation_attempts} attempts: {exc}",
                recording_id=recording_id,
            ) from exc

    @staticmethod
    def _result_fields(
        raw_transcript: str,
        annotation: Annotation,
        transcription: TranscriptionResult,
    ) -> dict[str, Any]:
        return {
            "raw_transcript": raw_transcript,
            "corrected_transcript": annotation.corrected_text,
            "ai_summary": annotation.summary,
            "structured_tags": annotation.structured_tags,
            "numeric_score": annotation.numeric_score,
            "transcription_backend": transcription.backend_used,
            "transcript_partial": transcription.partial,
        }

    async def _persist_error(self, recording_id: str, error_message: str) -> None:
        try:
            await self._store.update_recording_status(
                recording_id, RecordingStatus.ERROR, error_message=error_message
            )
        except Exception:
            logger.error(
                "Failed to persist error status",
                exc_info=True,
                extra={"recording_id": recording_id},
            )
