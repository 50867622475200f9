"""Audio container detection for browser-recorded clips.

Classifies a clip from its reference (URL or path) and its first bytes.
Never raises: an unknown clip is assumed to be webm, the MediaRecorder
default, and a wrong guess surfaces as a TranscodeError downstream.
"""

import posixpath
from enum import StrEnum
from urllib.parse import urlsplit

HEADER_BYTES = 16


class AudioFormat(StrEnum):
    """Containers the transcoder understands."""

    WEBM = "webm"
    WAV = "wav"
    MP3 = "mp3"
    OGG = "ogg"
    MP4 = "mp4"
    PCM = "pcm"


EXTENSION_FORMATS: dict[str, AudioFormat] = {
    ".webm": AudioFormat.WEBM,
    ".wav": AudioFormat.WAV,
    ".mp3": AudioFormat.MP3,
    ".ogg": AudioFormat.OGG,
    ".oga": AudioFormat.OGG,
    ".opus": AudioFormat.OGG,
    ".mp4": AudioFormat.MP4,
    ".m4a": AudioFormat.MP4,
    ".pcm": AudioFormat.PCM,
    ".raw": AudioFormat.PCM,
}

EBML_MAGIC = b"\x1a\x45\xdf\xa3"


def _extension_of(source_ref: str) -> str:
    """Lower-cased extension of a URL or path, ignoring query and fragment."""
    path = urlsplit(source_ref).path if "://" in source_ref else source_ref
    return posixpath.splitext(path.replace("\\", "/"))[1].lower()


def _is_mp4(header: bytes) -> bool:
    return header[4:8] == b"ftyp"


def _from_magic(header: bytes) -> AudioFormat | None:
    if header.startswith(EBML_MAGIC):
        return AudioFormat.WEBM
    if header.startswith(b"RIFF"):
        return AudioFormat.WAV
    if header.startswith(b"ID3"):
        return AudioFormat.MP3
    # MPEG audio frame sync: 11 set bits
    if len(header) >= 2 and header[0] == 0xFF and (header[1] & 0xE0) == 0xE0:
        return AudioFormat.MP3
    if header.startswith(b"OggS"):
        return AudioFormat.OGG
    return None


def sniff_format(source_ref: str, header: bytes = b"") -> AudioFormat:
    """Classify an audio clip into a container type.

    An ISO-BMFF ``ftyp`` box wins over everything, since Safari writes mp4
    under misleading names. Otherwise the reference's extension is trusted,
    then magic bytes, then webm.

    Args:
        source_ref: URL or filesystem path of the clip.
        header: The first bytes of the clip (HEADER_BYTES is enough).

    Returns:
        The detected AudioFormat.
    """
    if _is_mp4(header):
        return AudioFormat.MP4

    by_extension = EXTENSION_FORMATS.get(_extension_of(source_ref))
    if by_extension is not None:
        return by_extension

    return _from_magic(header) or AudioFormat.WEBM
