"""Tests for async-then-streaming routing."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from capture_processor.asr.gateway import TranscriptionGateway
from capture_processor.asr.interface import TranscriptionRequest, TranscriptionResult
from capture_processor.utils.errors import (
    ConfigurationError,
    SubmitError,
    TranscriptionTimeout,
    TransientNetworkError,
)

REQUEST = TranscriptionRequest(source_ref="https://cdn.example.com/rec-1.webm")


def _engine(name: str, configured: bool = True, result=None, error=None) -> MagicMock:
    engine = MagicMock()
    engine.name = name
    engine.is_configured = configured
    if error is not None:
        engine.transcribe = AsyncMock(side_effect=error)
    else:
        engine.transcribe = AsyncMock(
            return_value=result or TranscriptionResult(text=f"{name} text", backend_used=name)
        )
    return engine


class TestTranscriptionGateway:
    """Tests for TranscriptionGateway.transcribe()."""

    async def test_prefers_async_when_configured(self) -> None:
        async_engine, streaming = _engine("async"), _engine("streaming")
        result = await TranscriptionGateway(async_engine, streaming).transcribe(REQUEST)

        assert result.backend_used == "async"
        streaming.transcribe.assert_not_called()

    async def test_falls_back_on_async_failure(self) -> None:
        async_engine = _engine("async", error=SubmitError("queue down", backend="async"))
        streaming = _engine("streaming")

        result = await TranscriptionGateway(async_engine, streaming).transcribe(REQUEST)

        assert result.backend_used == "streaming"
        assert result.text == "streaming text"
        streaming.transcribe.assert_awaited_once_with(REQUEST)

    async def test_falls_back_on_unexpected_error(self) -> None:
        async_engine = _engine("async", error=KeyError("output"))
        result = await TranscriptionGateway(async_engine, _engine("streaming")).transcribe(REQUEST)
        assert result.backend_used == "streaming"

    async def test_unconfigured_async_goes_straight_to_streaming(self) -> None:
        async_engine = _engine("async", configured=False)
        streaming = _engine("streaming")

        result = await TranscriptionGateway(async_engine, streaming).transcribe(REQUEST)

        assert result.backend_used == "streaming"
        async_engine.transcribe.assert_not_called()

    async def test_preferred_streaming_skips_async(self) -> None:
        async_engine, streaming = _engine("async"), _engine("streaming")
        request = TranscriptionRequest(source_ref="a.webm", preferred_backend="streaming")

        result = await TranscriptionGateway(async_engine, streaming).transcribe(request)

        assert result.backend_used == "streaming"
        async_engine.transcribe.assert_not_called()

    async def test_both_fail_surfaces_streaming_error(self) -> None:
        async_error = TranscriptionTimeout("poll deadline", backend="async")
        streaming_error = TransientNetworkError("socket reset", backend="streaming")
        gateway = TranscriptionGateway(
            _engine("async", error=async_error),
            _engine("streaming", error=streaming_error),
        )

        with pytest.raises(TransientNetworkError) as exc_info:
            await gateway.transcribe(REQUEST)

        assert exc_info.value is streaming_error
        assert exc_info.value.__context__ is async_error

    async def test_streaming_not_configured_error_surfaces(self) -> None:
        gateway = TranscriptionGateway(
            _engine("async", configured=False),
            _engine("streaming", error=ConfigurationError("missing", backend="streaming")),
        )
        with pytest.raises(ConfigurationError):
            await gateway.transcribe(REQUEST)

    async def test_cancellation_is_not_caught(self) -> None:
        async_engine = _engine("async", error=asyncio.CancelledError())
        streaming = _engine("streaming")

        with pytest.raises(asyncio.CancelledError):
            await TranscriptionGateway(async_engine, streaming).transcribe(REQUEST)
        streaming.transcribe.assert_not_called()
