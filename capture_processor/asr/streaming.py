"""Streaming speech backend over a signed WebSocket.

Implements the iFlytek large-model IAT protocol: PCM is split into fixed
frames sent at real-time pace, and recognized text arrives incrementally as
base64-encoded JSON fragments. One coroutine drives the whole exchange and
resolves exactly once:

    connecting -> streaming -> completed | timed_out | errored | closed

Everything but "completed" still resolves successfully, as a partial
result, when some text has already been received.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime
from enum import IntEnum, StrEnum
from typing import Any
from urllib.parse import urlencode

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from capture_processor.asr.interface import (
    TranscriptionEngine,
    TranscriptionRequest,
    TranscriptionResult,
)
from capture_processor.audio.sniff import HEADER_BYTES, sniff_format
from capture_processor.audio.source import load_audio
from capture_processor.audio.transcode import transcode_to_pcm
from capture_processor.audio.wav_utils import pcm_duration_seconds
from capture_processor.utils.errors import (
    ConfigurationError,
    ProtocolError,
    TranscodeError,
    TranscriptionError,
    TranscriptionTimeout,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

BACKEND = "streaming"
DEFAULT_HOST = "iat.xf-yun.com"
DEFAULT_PATH = "/v1"
FRAME_SIZE = 1280  # bytes per frame: 40ms of 16kHz 16-bit mono audio
FRAME_INTERVAL_SECONDS = 0.04
CONNECT_TIMEOUT_SECONDS = 10.0
STATUS_COMPLETE = 2

SESSION_PARAMETERS: dict[str, Any] = {
    "iat": {
        "domain": "slm",
        "language": "zh_cn",
        "accent": "mulacc",
        "eos": 6000,
        "vinfo": 1,
        "result": {"encoding": "utf8", "compress": "raw", "format": "json"},
    }
}


class FrameRole(IntEnum):
    """Position of a frame in the stream; values are the wire status codes."""

    FIRST = 0
    MIDDLE = 1
    LAST = 2


class StreamState(StrEnum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    CLOSED = "closed"


@dataclass
class AudioFrame:
    """A fixed-size PCM slice with its position in the stream."""

    seq: int
    role: FrameRole
    audio: bytes


@dataclass
class _StreamSession:
    state: StreamState = StreamState.CONNECTING
    parts: list[str] = field(default_factory=list)
    error: TranscriptionError | None = None

    @property
    def text(self) -> str:
        return "".join(self.parts)

    @property
    def active(self) -> bool:
        return self.state in (StreamState.CONNECTING, StreamState.STREAMING)

    def finish(self, state: StreamState, error: TranscriptionError | None = None) -> None:
        # Only the first terminating event counts
        if not self.active:
            return
        self.state = state
        self.error = error


def split_frames(pcm: bytes, frame_size: int = FRAME_SIZE) -> list[AudioFrame]:
    """Split PCM into ceil(len/frame_size) sequenced frames.

    The frame whose end offset reaches the buffer length is LAST, so a
    buffer that fits in one frame yields a single LAST frame.
    """
    total = math.ceil(len(pcm) / frame_size)
    frames: list[AudioFrame] = []
    for seq in range(total):
        start = seq * frame_size
        end = min(start + frame_size, len(pcm))
        if end >= len(pcm):
            role = FrameRole.LAST
        elif seq == 0:
            role = FrameRole.FIRST
        else:
            role = FrameRole.MIDDLE
        frames.append(AudioFrame(seq=seq, role=role, audio=pcm[start:end]))
    return frames


def build_auth_url(
    api_key: str,
    api_secret: str,
    host: str = DEFAULT_HOST,
    path: str = DEFAULT_PATH,
    now: datetime | None = None,
) -> str:
    """Build the signed WebSocket URL.

    The HMAC-SHA256 signature covers host, date and the request line, so
    the URL is only accepted close to the signing time.
    """
    date = format_datetime(now or datetime.now(UTC), usegmt=True)
    signature_origin = f"host: {host}\ndate: {date}\nGET {path} HTTP/1.1"
    digest = hmac.new(
        api_secret.encode("utf-8"),
        signature_origin.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    signature = base64.b64encode(digest).decode("ascii")

    authorization_origin = (
        f'api_key="{api_key}", algorithm="hmac-sha256", '
        f'headers="host date request-line", signature="{signature}"'
    )
    authorization = base64.b64encode(authorization_origin.encode("utf-8")).decode("ascii")

    query = urlencode({"authorization": authorization, "date": date, "host": host})
    return f"wss://{host}{path}?{query}"


def split_message(message: Any) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return the header and result objects of an inbound message.

    Missing levels read as empty objects.

    Raises:
        ValueError: If the message, header, payload or result is not a JSON
            object.
    """
    if not isinstance(message, dict):
        raise ValueError("message is not a JSON object")
    header = message.get("header") or {}
    payload = message.get("payload") or {}
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise ValueError("header or payload is not a JSON object")
    result = payload.get("result") or {}
    if not isinstance(result, dict):
        raise ValueError("result is not a JSON object")
    return header, result


def decode_result_text(encoded: str) -> str:
    """Decode one inbound text fragment (base64 of a JSON word list).

    Raises:
        ValueError: If the fragment is not valid base64 JSON.
    """
    try:
        document = json.loads(base64.b64decode(encoded, validate=True))
    except (binascii.Error, TypeError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"undecodable result text: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("result text is not a JSON object")

    words: list[str] = []
    try:
        for word in document.get("ws", []):
            for candidate in word.get("cw", []):
                words.append(candidate.get("w", ""))
    except (AttributeError, TypeError) as exc:
        raise ValueError(f"unexpected result text layout: {exc}") from exc
    return "".join(words)


class StreamingTranscriptionClient(TranscriptionEngine):
    """Real-time WebSocket speech backend.

    Always available as long as credentials exist, but without diarization,
    so it serves as the fallback behind the async backend.

    Args:
        app_id: Application id (default: XUNFEI_APP_ID).
        api_key: API key (default: XUNFEI_API_KEY).
        api_secret: Signing secret (default: XUNFEI_API_SECRET).
        host: WebSocket host.
        path: WebSocket path.
        frame_size: Bytes of PCM per frame.
        frame_interval: Seconds between frame sends.
        connect: Factory returning an async context manager that yields a
            connection with send()/recv() (default: websockets client).
        http_client: Optional AsyncClient used to download the clip.
    """

    name = BACKEND

    def __init__(
        self,
        app_id: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        host: str = DEFAULT_HOST,
        path: str = DEFAULT_PATH,
        frame_size: int = FRAME_SIZE,
        frame_interval: float = FRAME_INTERVAL_SECONDS,
        connect: Callable[[str], Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._app_id = app_id or os.environ.get("XUNFEI_APP_ID", "")
        self._api_key = api_key or os.environ.get("XUNFEI_API_KEY", "")
        self._api_secret = api_secret or os.environ.get("XUNFEI_API_SECRET", "")
        self._host = host
        self._path = path
        self._frame_size = frame_size
        self._frame_interval = frame_interval
        self._connect = connect or self._default_connect
        self._http_client = http_client

    @staticmethod
    def _default_connect(url: str) -> Any:
        return ws_connect(url, open_timeout=CONNECT_TIMEOUT_SECONDS)

    @property
    def is_configured(self) -> bool:
        return bool(self._app_id and self._api_key and self._api_secret)

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Load, transcode and stream a clip, returning the recognized text.

        Raises:
            ConfigurationError: If any credential is missing.
            TranscodeError: If the clip yields no PCM audio.
            TranscriptionTimeout: Deadline elapsed before any text arrived.
            ProtocolError: Error code or malformed message before any text.
            TransientNetworkError: Transport failure before any text.
        """
        if not self.is_configured:
            raise ConfigurationError(
                "Streaming backend credentials not configured "
                "(XUNFEI_APP_ID, XUNFEI_API_KEY, XUNFEI_API_SECRET)",
                backend=BACKEND,
            )

        buffer = await load_audio(request.source_ref, self._http_client)
        fmt = sniff_format(request.source_ref, buffer[:HEADER_BYTES])
        logger.info(
            "Loaded %d bytes of %s audio", len(buffer), fmt.value,
            extra={"backend": BACKEND},
        )
        pcm = await transcode_to_pcm(buffer, fmt)
        if not pcm:
            raise TranscodeError("Audio contains no PCM samples to stream")

        return await self.transcribe_pcm(pcm, request.timeout_seconds)

    async def transcribe_pcm(self, pcm: bytes, timeout: float) -> TranscriptionResult:
        """Stream raw 16kHz mono PCM and assemble the transcript.

        Args:
            pcm: Little-endian 16-bit mono samples at 16kHz.
            timeout: Seconds allowed for the whole exchange.

        Returns:
            TranscriptionResult; partial=True if the exchange ended abnormally
            after some text was received.
        """
        frames = split_frames(pcm, self._frame_size)
        session = _StreamSession()
        logger.info(
            "Streaming %d frames (%.1fs of audio)",
            len(frames),
            pcm_duration_seconds(pcm),
            extra={"backend": BACKEND},
        )

        try:
            async with asyncio.timeout(timeout):
                await self._exchange(session, frames)
        except TimeoutError:
            session.finish(
                StreamState.TIMED_OUT,
                TranscriptionTimeout(
                    f"Streaming transcription timed out after {timeout:.0f}s",
                    backend=BACKEND,
                ),
            )

        return self._resolve(session)

    async def _exchange(self, session: _StreamSession, frames: list[AudioFrame]) -> None:
        url = build_auth_url(self._api_key, self._api_secret, self._host, self._path)
        try:
            async with self._connect(url) as ws:
                session.state = StreamState.STREAMING
                loop = asyncio.get_running_loop()
                started = loop.time()

                for frame in frames:
                    send_at = started + frame.seq * self._frame_interval
                    await self._receive_until(ws, session, send_at)
                    if not session.active:
                        return
                    await ws.send(json.dumps(self._build_frame(frame)))

                while session.active:
                    self._handle_message(session, await ws.recv())
        except ConnectionClosedOK:
            session.finish(
                StreamState.CLOSED,
                ProtocolError(
                    "Connection closed before a final result", backend=BACKEND
                ),
            )
        except (OSError, WebSocketException) as exc:
            session.finish(
                StreamState.ERRORED,
                TransientNetworkError(
                    f"Streaming connection failed: {exc}", backend=BACKEND
                ),
            )

    async def _receive_until(self, ws: Any, session: _StreamSession, deadline: float) -> None:
        """Handle inbound messages until the next frame's send slot."""
        loop = asyncio.get_running_loop()
        while session.active:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                message = await asyncio.wait_for(ws.recv(), remaining)
            except TimeoutError:
                return
            self._handle_message(session, message)

    def _build_frame(self, frame: AudioFrame) -> dict[str, Any]:
        message: dict[str, Any] = {
            "header": {"app_id": self._app_id, "status": int(frame.role)},
            "payload": {
                "audio": {
                    "encoding": "raw",
                    "sample_rate": 16000,
                    "channels": 1,
                    "bit_depth": 16,
                    "status": int(frame.role),
                    "seq": frame.seq,
                    "audio": base64.b64encode(frame.audio).decode("ascii"),
                }
            },
        }
        if frame.seq == 0:
            message["parameter"] = SESSION_PARAMETERS
        return message

    def _handle_message(self, session: _StreamSession, raw: str | bytes) -> None:
        try:
            header, result = split_message(json.loads(raw))
        except ValueError:
            session.finish(
                StreamState.ERRORED,
                ProtocolError("Malformed streaming message", backend=BACKEND),
            )
            return

        code = header.get("code", 0)
        if code != 0:
            logger.error(
                "Streaming backend error %s: %s (sid=%s)",
                code,
                header.get("message", ""),
                header.get("sid", ""),
                extra={"backend": BACKEND},
            )
            session.finish(
                StreamState.ERRORED,
                ProtocolError(
                    f"Streaming backend error {code}: {header.get('message', '')}",
                    backend=BACKEND,
                    code=code,
                ),
            )
            return

        encoded = result.get("text")
        if encoded:
            try:
                session.parts.append(decode_result_text(encoded))
            except ValueError as exc:
                session.finish(
                    StreamState.ERRORED,
                    ProtocolError(f"Malformed result fragment: {exc}", backend=BACKEND),
                )
                return

        if header.get("status") == STATUS_COMPLETE:
            session.finish(StreamState.COMPLETED)

    def _resolve(self, session: _StreamSession) -> TranscriptionResult:
        text = session.text
        if session.state is StreamState.COMPLETED:
            logger.info(
                "Streaming transcription completed: %d chars", len(text),
                extra={"backend": BACKEND},
            )
            return TranscriptionResult(text=text, backend_used=BACKEND)

        if text:
            logger.warning(
                "Streaming session ended as %s, returning %d chars as partial result",
                session.state.value,
                len(text),
                extra={"backend": BACKEND},
            )
            return TranscriptionResult(text=text, backend_used=BACKEND, partial=True)

        if session.error is not None:
            raise session.error
        raise ProtocolError(
            f"Streaming session ended as {session.state.value} without a result",
            backend=BACKEND,
        )
