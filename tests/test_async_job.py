"""Tests for the asynchronous submit/poll speech backend."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from capture_processor.asr.async_job import AsyncTranscriptionClient
from capture_processor.asr.interface import DiarizedSegment, TranscriptionRequest
from capture_processor.utils.errors import (
    ConfigurationError,
    ProtocolError,
    SubmitError,
    TaskFailedError,
    TranscriptionTimeout,
)

SUBMIT_URL = "https://asr.example.com/api/v1/services/audio/asr/transcription"
TASK_URL = "https://asr.example.com/api/v1/tasks"
RESULT_URL = "https://results.example.com/task-1.json?Signature=abc"
SOURCE = "https://cdn.example.com/recordings/rec-1.webm"

# -- Backend response fixtures --

SUBMIT_RESPONSE = {"output": {"task_id": "task-1", "task_status": "PENDING"}}
STATUS_RUNNING = {"output": {"task_id": "task-1", "task_status": "RUNNING"}}
STATUS_SUCCEEDED = {
    "output": {
        "task_id": "task-1",
        "task_status": "SUCCEEDED",
        "results": [{"file_url": SOURCE, "transcription_url": RESULT_URL}],
    }
}
STATUS_FAILED = {
    "output": {
        "task_id": "task-1",
        "task_status": "FAILED",
        "code": "InvalidFile.DownloadFailed",
        "message": "download failed",
    }
}

DIARIZED_DOCUMENT = {
    "transcripts": [
        {
            "channel_id": 0,
            "text": "你好，请坐谢谢",
            "sentences": [
                {"begin_time": 100, "end_time": 800, "text": "你好", "speaker_id": 0},
                {"begin_time": 800, "end_time": 1600, "text": "，请坐", "speaker_id": 0},
                {"begin_time": 2000, "end_time": 2600, "text": "谢谢", "speaker_id": 1},
            ],
        }
    ]
}
WORD_DOCUMENT = {
    "transcripts": [
        {
            "sentences": [{"text": "欢迎光临"}],
            "words": [
                {"begin_time": 0, "text": "欢迎", "speaker_id": 1},
                {"begin_time": 400, "text": "光临", "speaker_id": 1},
            ],
        }
    ]
}
PLAIN_DOCUMENT = {"transcripts": [{"text": "欢迎光临", "sentences": [{"text": "欢迎光临"}]}]}


class BackendStub:
    """Routes requests to canned responses and records what was sent."""

    def __init__(
        self,
        polls: list,
        document: dict | None = None,
        submit: httpx.Response | None = None,
    ) -> None:
        self.requests: list[httpx.Request] = []
        self._polls = list(polls)
        self._document = document if document is not None else DIARIZED_DOCUMENT
        self._submit = submit

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == SUBMIT_URL:
            return self._submit or httpx.Response(200, json=SUBMIT_RESPONSE)
        if url.startswith(TASK_URL):
            item = self._polls.pop(0)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, httpx.Response):
                return item
            return httpx.Response(200, json=item)
        if url == RESULT_URL:
            return httpx.Response(200, json=self._document)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def polls_made(self) -> int:
        return sum(str(r.url).startswith(TASK_URL) for r in self.requests)


@pytest.fixture
def mock_sleep():
    """Record every backoff delay without sleeping."""
    with patch(
        "capture_processor.asr.async_job.asyncio.sleep", new_callable=AsyncMock
    ) as sleep:
        yield sleep


def _engine(client: httpx.AsyncClient, api_key: str = "sk-test") -> AsyncTranscriptionClient:
    return AsyncTranscriptionClient(
        api_key=api_key,
        submit_url=SUBMIT_URL,
        task_url=TASK_URL,
        http_client=client,
    )


def _request(**overrides) -> TranscriptionRequest:
    return TranscriptionRequest(source_ref=overrides.pop("source_ref", SOURCE), **overrides)


class TestConfiguration:
    @pytest.fixture(autouse=True)
    def _clear_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DASHSCOPE_API_KEY", raising=False)

    async def test_missing_key(self) -> None:
        engine = AsyncTranscriptionClient()
        assert engine.is_configured is False
        with pytest.raises(ConfigurationError, match="DASHSCOPE_API_KEY"):
            await engine.transcribe(_request())

    def test_key_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DASHSCOPE_API_KEY", "sk-env")
        assert AsyncTranscriptionClient().is_configured is True

    async def test_local_path_cannot_be_submitted(self) -> None:
        engine = AsyncTranscriptionClient(api_key="sk-test")
        with pytest.raises(SubmitError, match="http"):
            await engine.transcribe(_request(source_ref="/tmp/rec-1.webm"))


class TestTranscribe:
    """Submit, poll and fetch happy paths."""

    async def test_diarized_sentences(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_RUNNING, STATUS_SUCCEEDED])
        async with stub.client() as client:
            result = await _engine(client).transcribe(_request())

        assert result.text == "说话人1: 你好，请坐\n说话人2: 谢谢"
        assert result.backend_used == "async"
        assert result.partial is False
        assert result.segments[0] == DiarizedSegment(text="你好", speaker_id=0, start_offset_ms=100)
        assert len(result.segments) == 3

    async def test_submit_request_shape(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_SUCCEEDED])
        async with stub.client() as client:
            await _engine(client).transcribe(_request(expected_speaker_count=4))

        submit = stub.requests[0]
        assert submit.method == "POST"
        assert submit.headers["Authorization"] == "Bearer sk-test"
        assert submit.headers["X-DashScope-Async"] == "enable"
        body = json.loads(submit.content)
        assert body["model"] == "paraformer-v2"
        assert body["input"] == {"file_urls": [SOURCE]}
        assert body["parameters"]["diarization_enabled"] is True
        assert body["parameters"]["speaker_count"] == 4
        assert body["parameters"]["language_hints"] == ["zh"]

    async def test_poll_and_fetch_requests(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_SUCCEEDED])
        async with stub.client() as client:
            await _engine(client).transcribe(_request())

        poll, fetch = stub.requests[1], stub.requests[2]
        assert str(poll.url) == f"{TASK_URL}/task-1"
        assert poll.headers["Authorization"] == "Bearer sk-test"
        assert str(fetch.url) == RESULT_URL
        assert "Authorization" not in fetch.headers

    async def test_word_level_fallback(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_SUCCEEDED], document=WORD_DOCUMENT)
        async with stub.client() as client:
            result = await _engine(client).transcribe(_request())
        assert result.text == "说话人2: 欢迎光临"

    async def test_plain_text_fallback(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_SUCCEEDED], document=PLAIN_DOCUMENT)
        async with stub.client() as client:
            result = await _engine(client).transcribe(_request())
        assert result.text == "欢迎光临"
        assert result.segments == []

    async def test_empty_document(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_SUCCEEDED], document={"transcripts": [{"text": "  "}]})
        async with stub.client() as client:
            with pytest.raises(ProtocolError, match="empty"):
                await _engine(client).transcribe(_request())

    @pytest.mark.parametrize(
        "document",
        [
            {"transcripts": ["not an object"]},
            {"transcripts": "not a list"},
            {"transcripts": [{"sentences": ["not an object"]}]},
            {"transcripts": [{"sentences": {"text": "欢迎"}}]},
            {"transcripts": [{"text": 5}]},
        ],
    )
    async def test_malformed_document(self, mock_sleep: AsyncMock, document: dict) -> None:
        stub = BackendStub(polls=[STATUS_SUCCEEDED], document=document)
        async with stub.client() as client:
            with pytest.raises(ProtocolError):
                await _engine(client).transcribe(_request())


class TestPolling:
    """Poll loop backoff, transient errors and terminal states."""

    async def test_backoff_delays(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_RUNNING] * 6 + [STATUS_SUCCEEDED])
        async with stub.client() as client:
            await _engine(client).transcribe(_request(timeout_seconds=600))

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0, 10.0]

    async def test_transient_poll_errors_continue(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(
            polls=[
                httpx.Response(503),
                httpx.Response(429),
                httpx.ConnectError("reset"),
                STATUS_SUCCEEDED,
            ]
        )
        async with stub.client() as client:
            result = await _engine(client).transcribe(_request())
        assert result.text.startswith("说话人1")
        assert stub.polls_made() == 4

    async def test_unknown_status_continues(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[{"output": {"task_status": "QUEUED"}}, STATUS_SUCCEEDED])
        async with stub.client() as client:
            await _engine(client).transcribe(_request())
        assert stub.polls_made() == 2

    async def test_client_error_fails_immediately(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[httpx.Response(403, text="forbidden"), STATUS_SUCCEEDED])
        async with stub.client() as client:
            with pytest.raises(ProtocolError) as exc_info:
                await _engine(client).transcribe(_request())
        assert exc_info.value.status_code == 403
        assert stub.polls_made() == 1

    async def test_task_failed(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[STATUS_RUNNING, STATUS_FAILED])
        async with stub.client() as client:
            with pytest.raises(TaskFailedError, match="DownloadFailed") as exc_info:
                await _engine(client).transcribe(_request())
        assert exc_info.value.task_id == "task-1"

    async def test_succeeded_without_result_url(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[{"output": {"task_status": "SUCCEEDED", "results": []}}])
        async with stub.client() as client:
            with pytest.raises(ProtocolError, match="without results"):
                await _engine(client).transcribe(_request())

    async def test_timeout(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[])
        async with stub.client() as client:
            with pytest.raises(TranscriptionTimeout, match="task-1"):
                await _engine(client).transcribe(_request(timeout_seconds=0))
        assert stub.polls_made() == 0

    @pytest.mark.parametrize(
        "body",
        [
            [1, 2],
            {"output": "not an object"},
            {"output": {"task_status": "SUCCEEDED", "results": ["not an object"]}},
            {"output": {"task_status": "SUCCEEDED", "results": "not a list"}},
        ],
    )
    async def test_malformed_poll_response(self, mock_sleep: AsyncMock, body: object) -> None:
        stub = BackendStub(polls=[body, STATUS_SUCCEEDED])
        async with stub.client() as client:
            with pytest.raises(ProtocolError):
                await _engine(client).transcribe(_request())
        assert stub.polls_made() == 1

    async def test_pending_status_keeps_polling(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[{"output": {"task_status": "PENDING"}}, STATUS_SUCCEEDED])
        async with stub.client() as client:
            await _engine(client).transcribe(_request())
        assert stub.polls_made() == 2


class TestSubmitFailures:
    async def test_rejected_submission(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[], submit=httpx.Response(400, text="bad request"))
        async with stub.client() as client:
            with pytest.raises(SubmitError, match="400"):
                await _engine(client).transcribe(_request())

    async def test_missing_task_id(self, mock_sleep: AsyncMock) -> None:
        stub = BackendStub(polls=[], submit=httpx.Response(200, json={"output": {}}))
        async with stub.client() as client:
            with pytest.raises(SubmitError, match="task_id"):
                await _engine(client).transcribe(_request())
