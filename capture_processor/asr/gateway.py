"""Routing between the async and streaming speech backends.

The async backend is more accurate (diarization, larger model) but sits
behind a shared job queue that can be unavailable; the streaming backend is
the always-available fallback.
"""

import logging

from capture_processor.asr.interface import (
    TranscriptionEngine,
    TranscriptionRequest,
    TranscriptionResult,
)

logger = logging.getLogger(__name__)


class TranscriptionGateway:
    """Provider-agnostic entry point for transcription.

    Tries the async engine first when it is configured, falling back to
    the streaming engine on any failure. Results from the two engines are
    never combined for one request.
    """

    def __init__(
        self,
        async_engine: TranscriptionEngine,
        streaming_engine: TranscriptionEngine,
    ) -> None:
        self._async_engine = async_engine
        self._streaming_engine = streaming_engine

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Transcribe with fallback.

        Args:
            request: The transcription request.

        Returns:
            The first successful engine's result.

        Raises:
            TranscriptionError: The streaming engine's error when no engine
                succeeded (the async failure, if any, is chained as context).
        """
        if request.preferred_backend != "streaming" and self._async_engine.is_configured:
            try:
                return await self._async_engine.transcribe(request)
            except Exception as exc:
                logger.warning(
                    "Async backend failed, falling back to streaming: %s",
                    exc,
                    extra={"backend": self._async_engine.name, "error": str(exc)},
                )
                return await self._streaming_engine.transcribe(request)
        elif request.preferred_backend != "streaming":
            logger.info(
                "Async backend not configured, using streaming",
                extra={"backend": self._streaming_engine.name},
            )

        return await self._streaming_engine.transcribe(request)
