"""Command-line entry point: transcribe one recording and print the result.

Runs the transcription gateway once with credentials from the environment
(XUNFEI_*, DASHSCOPE_API_KEY) and writes the result as JSON to stdout.
Structured logs go to stdout as well; set LOG_LEVEL to adjust verbosity.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict

from capture_processor.asr import build_gateway
from capture_processor.asr.interface import (
    DEFAULT_TIMEOUT_SECONDS,
    TranscriptionRequest,
    TranscriptionResult,
)
from capture_processor.observability.logger import setup_logging
from capture_processor.utils.errors import PipelineError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="capture-transcribe",
        description="Transcribe a recorded clip with async-then-streaming fallback.",
    )
    parser.add_argument("source", help="URL or local path of the recording")
    parser.add_argument(
        "--speakers",
        type=int,
        default=2,
        help="Expected number of speakers (default: 2)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"Transcription budget in seconds (default: {DEFAULT_TIMEOUT_SECONDS:g})",
    )
    parser.add_argument(
        "--backend",
        choices=["async", "streaming"],
        default=None,
        help="Preferred backend; streaming skips the async job queue",
    )
    return parser


async def _run(request: TranscriptionRequest) -> TranscriptionResult:
    gateway = build_gateway()
    return await gateway.transcribe(request)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, transcribe, and print the result as JSON."""
    args = _build_parser().parse_args(argv)
    setup_logging(os.environ.get("LOG_LEVEL", "INFO").upper())

    request = TranscriptionRequest(
        source_ref=args.source,
        expected_speaker_count=args.speakers,
        timeout_seconds=args.timeout,
        preferred_backend=args.backend,
    )

    try:
        result = asyncio.run(_run(request))
    except PipelineError as exc:
        logger.error("Transcription failed: %s", exc, extra={"error": str(exc)})
        return 1

    print(json.dumps(asdict(result), ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
