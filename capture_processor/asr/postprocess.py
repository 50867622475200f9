"""Transcript post-processing: speaker turns and repetition cleanup."""

import re

from capture_processor.asr.interface import DiarizedSegment

SPEAKER_LABEL = "说话人"

# 3+ back-to-back copies of a 1-6 character phrase within one line. Digits
# are excluded so numbers such as "1000" survive.
_REPEATED_PHRASE = re.compile(r"([^\d\n]{1,6})\1{2,}")


def speaker_label(speaker_id: int) -> str:
    """Human label for a zero-based diarization id ("说话人1" for 0)."""
    return f"{SPEAKER_LABEL}{speaker_id + 1}"


def format_speaker_turns(segments: list[DiarizedSegment]) -> str:
    """Group contiguous same-speaker segments into labelled lines.

    A speaker change starts a new line prefixed with the speaker label.
    Text within a turn is concatenated without a separator and turns are
    joined by newlines. A segment without a speaker id continues the
    current line.

    Args:
        segments: Diarized segments in emission order.

    Returns:
        Formatted transcript, e.g. "说话人1: 你好，请坐\\n说话人2: 谢谢".
    """
    lines: list[str] = []
    current_speaker: int | None = None

    for segment in segments:
        speaker_id = segment.speaker_id
        if speaker_id is not None and speaker_id != current_speaker:
            current_speaker = speaker_id
            lines.append(f"{speaker_label(speaker_id)}: {segment.text}")
        elif lines:
            lines[-1] += segment.text
        else:
            lines.append(segment.text)

    return "\n".join(lines)


def collapse_repeats(text: str) -> str:
    """Collapse immediately repeated short phrases into one copy.

    Streaming recognition occasionally echoes a phrase several times
    ("好的好的好的好的" becomes "好的"). Two copies are left alone.
    """
    return _REPEATED_PHRASE.sub(r"\1", text)
