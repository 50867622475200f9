"""Browser audio to 16kHz PCM transcoder using ffmpeg.

Converts webm/ogg/mp3/mp4/wav input to raw 16kHz mono 16-bit little-endian
PCM as required by the streaming speech backend. ffmpeg runs as an asyncio
subprocess so concurrent pipeline runs keep making progress.
"""

import asyncio
import logging
import os
import shutil
import tempfile

from capture_processor.audio.sniff import AudioFormat
from capture_processor.audio.wav_utils import (
    NUM_CHANNELS,
    SAMPLE_RATE,
    extract_pcm,
)
from capture_processor.utils.errors import TranscodeError

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = SAMPLE_RATE
TARGET_CHANNELS = NUM_CHANNELS
TRANSCODE_TIMEOUT_SECONDS = 120
STDERR_TAIL_CHARS = 300


def _check_ffmpeg_available() -> str:
    """Verify ffmpeg is available on the system.

    Returns:
        Path to the ffmpeg binary.

    Raises:
        TranscodeError: If ffmpeg is not found.
    """
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise TranscodeError("ffmpeg binary not found on PATH")
    return ffmpeg_path


def _build_command(ffmpeg_path: str, input_path: str, output_path: str) -> list[str]:
    return [
        ffmpeg_path,
        "-y",
        "-i",
        input_path,
        "-ar",
        str(TARGET_SAMPLE_RATE),
        "-ac",
        str(TARGET_CHANNELS),
        "-acodec",
        "pcm_s16le",
        "-f",
        "s16le",
        output_path,
    ]


def _make_temp_file(suffix: str) -> str:
    fd, path = tempfile.mkstemp(prefix="capture-", suffix=suffix)
    os.close(fd)
    return path


def _remove_quietly(path: str | None) -> None:
    if path is None:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove temp file %s", path, exc_info=True)


async def _run_ffmpeg(cmd: list[str], input_path: str) -> None:
    """Run ffmpeg to completion, raising TranscodeError on any failure."""
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(
            process.communicate(), timeout=TRANSCODE_TIMEOUT_SECONDS
        )
    except TimeoutError as exc:
        process.kill()
        await process.wait()
        raise TranscodeError(
            f"ffmpeg transcode timed out after {TRANSCODE_TIMEOUT_SECONDS} seconds",
            input_path=input_path,
        ) from exc
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    if process.returncode != 0:
        detail = (stderr or b"").decode("utf-8", errors="replace").strip()
        raise TranscodeError(
            f"ffmpeg transcode failed (exit {process.returncode}): "
            f"{detail[-STDERR_TAIL_CHARS:]}",
            input_path=input_path,
        )


async def transcode_to_pcm(buffer: bytes, fmt: AudioFormat) -> bytes:
    """Convert an audio buffer to 16kHz mono 16-bit little-endian PCM.

    PCM input is returned unchanged, and WAV input already in the target
    format is unwrapped without invoking ffmpeg. Both temp files are removed
    on every exit path.

    Args:
        buffer: Complete contents of the recorded clip.
        fmt: Container detected by sniff_format().

    Returns:
        Raw PCM bytes.

    Raises:
        TranscodeError: If ffmpeg is missing, fails, times out, or produces
            no output.
    """
    if fmt is AudioFormat.PCM:
        return buffer

    if fmt is AudioFormat.WAV:
        pcm = extract_pcm(buffer)
        if pcm:
            logger.debug("WAV already 16kHz mono 16-bit, skipping ffmpeg")
            return pcm

    ffmpeg_path = _check_ffmpeg_available()

    input_path: str | None = None
    output_path: str | None = None
    try:
        input_path = _make_temp_file(f".{fmt.value}")
        output_path = _make_temp_file(".pcm")
        with open(input_path, "wb") as f:
            f.write(buffer)

        await _run_ffmpeg(_build_command(ffmpeg_path, input_path, output_path), input_path)

        with open(output_path, "rb") as f:
            pcm = f.read()
    finally:
        _remove_quietly(input_path)
        _remove_quietly(output_path)

    if not pcm:
        raise TranscodeError(
            f"ffmpeg produced no audio from {fmt.value} input ({len(buffer)} bytes)"
        )

    logger.info(
        "Transcoded %d bytes of %s to %d bytes of PCM",
        len(buffer),
        fmt.value,
        len(pcm),
    )
    return pcm
