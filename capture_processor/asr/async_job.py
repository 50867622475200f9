"""Asynchronous speech backend: submit a job, poll it, fetch the result.

Implements the DashScope Paraformer file-transcription API. Gives better
accuracy and speaker diarization than the streaming backend, but depends on
a shared job queue that can be unavailable.
"""

import asyncio
import contextlib
import logging
import os
import time
from typing import Any

import httpx

from capture_processor.asr.interface import (
    AsyncTask,
    AsyncTaskStatus,
    DiarizedSegment,
    TranscriptionEngine,
    TranscriptionRequest,
    TranscriptionResult,
)
from capture_processor.asr.postprocess import format_speaker_turns
from capture_processor.audio.source import is_remote
from capture_processor.utils.errors import (
    ConfigurationError,
    ProtocolError,
    SubmitError,
    TaskFailedError,
    TranscriptionTimeout,
)
from capture_processor.utils.http import request_with_retry, retry_on_transient
from capture_processor.utils.retry import backoff_delays

logger = logging.getLogger(__name__)

BACKEND = "async"
DEFAULT_SUBMIT_URL = (
    "https://dashscope.aliyuncs.com/api/v1/services/audio/asr/transcription"
)
DEFAULT_TASK_URL = "https://dashscope.aliyuncs.com/api/v1/tasks"
DEFAULT_MODEL = "paraformer-v2"
LANGUAGE_HINTS = ["zh"]
POLL_BASE_DELAY_SECONDS = 1.0
POLL_MAX_DELAY_SECONDS = 10.0
SUBMIT_MAX_RETRIES = 3
FETCH_MAX_RETRIES = 3
HTTP_TIMEOUT_SECONDS = 30.0
RATE_LIMIT_STATUS = 429

_TASK_STATUSES = {
    "PENDING": AsyncTaskStatus.PENDING,
    "RUNNING": AsyncTaskStatus.RUNNING,
    "SUCCEEDED": AsyncTaskStatus.SUCCEEDED,
    "FAILED": AsyncTaskStatus.FAILED,
    "CANCELED": AsyncTaskStatus.FAILED,
}


def _is_non_transient(status_code: int) -> bool:
    return 400 <= status_code < 500 and status_code != RATE_LIMIT_STATUS


def _json_object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ProtocolError(f"{what} is not a JSON object", backend=BACKEND)
    return value


def _to_segment(item: dict[str, Any]) -> DiarizedSegment:
    return DiarizedSegment(
        text=item.get("text", ""),
        speaker_id=item.get("speaker_id"),
        start_offset_ms=int(item.get("begin_time") or 0),
    )


class AsyncTranscriptionClient(TranscriptionEngine):
    """Submit/poll transcription backend with speaker diarization.

    Args:
        api_key: DashScope API key (default: DASHSCOPE_API_KEY).
        submit_url: Task creation endpoint.
        task_url: Task status endpoint prefix.
        model: Recognition model name.
        http_client: Optional shared AsyncClient (a private one is created
            per call if omitted).
    """

    name = BACKEND

    def __init__(
        self,
        api_key: str | None = None,
        submit_url: str = DEFAULT_SUBMIT_URL,
        task_url: str = DEFAULT_TASK_URL,
        model: str = DEFAULT_MODEL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("DASHSCOPE_API_KEY", "")
        self._submit_url = submit_url
        self._task_url = task_url.rstrip("/")
        self._model = model
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _client(self) -> contextlib.AbstractAsyncContextManager[httpx.AsyncClient]:
        if self._http_client is not None:
            return contextlib.nullcontext(self._http_client)
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Transcribe a clip via submit, poll and result-document fetch.

        Raises:
            ConfigurationError: If the API key is missing.
            SubmitError: If the task cannot be created.
            TaskFailedError: If the backend reports the task as failed.
            ProtocolError: On a non-transient HTTP error or malformed result.
            TranscriptionTimeout: If the task is not terminal within
                request.timeout_seconds.
        """
        if not self.is_configured:
            raise ConfigurationError(
                "Async backend not configured (DASHSCOPE_API_KEY)", backend=BACKEND
            )
        if not is_remote(request.source_ref):
            raise SubmitError(
                "Async backend needs a publicly reachable http(s) URL",
                backend=BACKEND,
            )

        logger.info(
            "Using async backend %s (speakers: %d)",
            self._model,
            request.expected_speaker_count,
            extra={"backend": BACKEND},
        )
        async with self._client() as client:
            task = await self._submit_task(client, request)
            task = await self._poll_until_complete(client, task, request.timeout_seconds)
            document = await self._fetch_result_document(client, task)

        text, segments = self._convert_document(document)
        return TranscriptionResult(text=text, backend_used=BACKEND, segments=segments)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def _submit_task(
        self, client: httpx.AsyncClient, request: TranscriptionRequest
    ) -> AsyncTask:
        """Create a transcription task.

        Returns:
            The pending AsyncTask.

        Raises:
            SubmitError: If the backend rejects the task or returns no id.
        """
        body = {
            "model": self._model,
            "input": {"file_urls": [request.source_ref]},
            "parameters": {
                "language_hints": LANGUAGE_HINTS,
                "diarization_enabled": True,
                "speaker_count": request.expected_speaker_count,
            },
        }
        headers = {
            **self._auth_headers(),
            "Content-Type": "application/json",
            "X-DashScope-Async": "enable",
        }

        response = await request_with_retry(
            client,
            "POST",
            self._submit_url,
            json=body,
            headers=headers,
            retry_on=retry_on_transient,
            max_retries=SUBMIT_MAX_RETRIES,
        )
        if not response.is_success:
            logger.error(
                "Async submit error: %d - %s",
                response.status_code,
                response.text,
                extra={"backend": BACKEND},
            )
            raise SubmitError(
                f"Task submission failed with status {response.status_code}: "
                f"{response.text}",
                backend=BACKEND,
            )

        try:
            task_id = (response.json().get("output") or {}).get("task_id")
        except (ValueError, AttributeError) as exc:
            raise SubmitError(
                f"Unreadable submission response: {exc}", backend=BACKEND
            ) from exc
        if not task_id:
            raise SubmitError("No task_id in submission response", backend=BACKEND)

        logger.info(
            "Submitted async task %s", task_id,
            extra={"backend": BACKEND, "task_id": task_id},
        )
        return AsyncTask(task_id=task_id)

    async def _poll_until_complete(
        self, client: httpx.AsyncClient, task: AsyncTask, timeout: float
    ) -> AsyncTask:
        """Poll task status with capped exponential backoff.

        Polls are strictly sequential. 5xx, 429 and transport errors are
        transient and keep polling; other 4xx responses fail immediately.

        Raises:
            TaskFailedError: If the task failed.
            ProtocolError: On a non-transient HTTP error or malformed body.
            TranscriptionTimeout: If no terminal status arrives in time.
        """
        url = f"{self._task_url}/{task.task_id}"
        deadline = time.monotonic() + timeout
        delays = backoff_delays(POLL_BASE_DELAY_SECONDS, POLL_MAX_DELAY_SECONDS)
        log_extra = {"backend": BACKEND, "task_id": task.task_id}

        while time.monotonic() < deadline:
            await asyncio.sleep(next(delays))

            try:
                response = await client.get(url, headers=self._auth_headers())
            except httpx.TransportError as exc:
                logger.warning("Async poll transport error: %s", exc, extra=log_extra)
                continue

            if not response.is_success:
                logger.warning(
                    "Async poll error: %d - %s",
                    response.status_code,
                    response.text,
                    extra=log_extra,
                )
                if _is_non_transient(response.status_code):
                    raise ProtocolError(
                        f"Poll failed with status {response.status_code}: "
                        f"{response.text}",
                        backend=BACKEND,
                        status_code=response.status_code,
                    )
                continue

            try:
                body = response.json()
            except ValueError as exc:
                raise ProtocolError(
                    f"Unreadable poll response: {exc}", backend=BACKEND
                ) from exc
            output = _json_object(
                _json_object(body, "Poll response").get("output") or {}, "Poll output"
            )

            raw_status = str(output.get("task_status", "")).upper()
            status = _TASK_STATUSES.get(raw_status)
            if status is None:
                logger.warning(
                    "Unknown task status %r, continuing to poll", raw_status,
                    extra=log_extra,
                )
                continue
            task.status = status
            if not status.is_terminal:
                continue

            if status is AsyncTaskStatus.FAILED:
                logger.error("Async task %s failed", task.task_id, extra=log_extra)
                raise TaskFailedError(
                    f"Transcription task {task.task_id} failed: "
                    f"{output.get('code', '')} {output.get('message', '')}".strip(),
                    backend=BACKEND,
                    task_id=task.task_id,
                )

            task.result_document_ref = self._result_document_ref(output)
            logger.info("Async task %s completed", task.task_id, extra=log_extra)
            return task

        raise TranscriptionTimeout(
            f"Task {task.task_id} timed out after {timeout:.0f}s",
            backend=BACKEND,
        )

    @staticmethod
    def _result_document_ref(output: dict[str, Any]) -> str:
        results = output.get("results") or []
        if not isinstance(results, list) or not results:
            raise ProtocolError("Task succeeded without results", backend=BACKEND)
        url = _json_object(results[0], "Task result entry").get("transcription_url")
        if not url or not isinstance(url, str):
            raise ProtocolError(
                "Task succeeded without a transcription_url", backend=BACKEND
            )
        return url

    async def _fetch_result_document(
        self, client: httpx.AsyncClient, task: AsyncTask
    ) -> dict[str, Any]:
        """Download the result document from its pre-signed location.

        Raises:
            ProtocolError: If the document cannot be fetched or parsed.
        """
        # Pre-signed URL: no Authorization header
        response = await request_with_retry(
            client,
            "GET",
            task.result_document_ref,
            retry_on=retry_on_transient,
            max_retries=FETCH_MAX_RETRIES,
        )
        if not response.is_success:
            raise ProtocolError(
                f"Result document fetch failed with status {response.status_code}",
                backend=BACKEND,
                status_code=response.status_code,
            )
        try:
            document = response.json()
        except ValueError as exc:
            raise ProtocolError(
                f"Result document is not JSON: {exc}", backend=BACKEND
            ) from exc
        if not isinstance(document, dict):
            raise ProtocolError("Result document is not a JSON object", backend=BACKEND)
        return document

    def _convert_document(
        self, document: dict[str, Any]
    ) -> tuple[str, list[DiarizedSegment]]:
        """Rebuild transcript text from a result document.

        Prefers sentence-level diarization, then word-level, then plain text.

        Returns:
            The formatted text and the diarized segments it was built from.

        Raises:
            ProtocolError: If the document holds no transcript text.
        """
        transcripts = document.get("transcripts") or []
        if not isinstance(transcripts, list) or not transcripts:
            raise ProtocolError("Result document has no transcripts", backend=BACKEND)
        transcript = _json_object(transcripts[0], "Transcript entry")

        for level in ("sentences", "words"):
            items = transcript.get(level) or []
            if not isinstance(items, list):
                raise ProtocolError(f"Transcript {level} is not a list", backend=BACKEND)
            items = [_json_object(item, f"Transcript {level} entry") for item in items]
            if items and items[0].get("speaker_id") is not None:
                segments = [_to_segment(item) for item in items]
                return format_speaker_turns(segments), segments

        text = transcript.get("text") or ""
        if not isinstance(text, str) or not text.strip():
            raise ProtocolError("Result document text is empty", backend=BACKEND)
        return text, []
