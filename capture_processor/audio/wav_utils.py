"""WAV helpers for 16kHz mono 16-bit PCM audio.

Lets the transcoder unwrap WAV clips that are already in the streaming
format without spawning a decoder.
"""

import io
import wave

SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2  # 16-bit = 2 bytes
NUM_CHANNELS = 1


def extract_pcm(buffer: bytes) -> bytes | None:
    """Return the raw frames of a WAV buffer already at the target format.

    Args:
        buffer: Complete WAV file contents.

    Returns:
        Little-endian 16-bit mono PCM at 16kHz, or None if the buffer is not
        a readable PCM WAV in exactly that format.
    """
    try:
        with wave.open(io.BytesIO(buffer), "rb") as wf:
            if (
                wf.getframerate() != SAMPLE_RATE
                or wf.getnchannels() != NUM_CHANNELS
                or wf.getsampwidth() != SAMPLE_WIDTH
            ):
                return None
            return wf.readframes(wf.getnframes())
    except (wave.Error, EOFError):
        return None


def pcm_duration_seconds(pcm: bytes, sample_rate: int = SAMPLE_RATE) -> float:
    """Duration of a raw 16-bit mono PCM buffer in seconds."""
    return len(pcm) / (SAMPLE_WIDTH * NUM_CHANNELS * sample_rate)
