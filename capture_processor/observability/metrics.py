"""Pipeline run metrics collection and reporting.

Provides RunMetrics for structured observability data, StageTimer for
measuring pipeline stage durations, and log_run_metrics() for emitting
metrics as one structured JSON line on stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


@dataclass
class RunMetrics:
    """All metrics collected for a single recording pipeline run."""

    recording_id: str
    status: str
    processing_wall_time_seconds: float
    backend_used: str | None = None
    partial: bool = False
    speech_detected: bool = False
    raw_transcript_chars: int = 0
    cleaned_transcript_chars: int = 0
    reference_terms_count: int = 0
    attempt_count: int = 0
    stage_timings: dict[str, float] = field(default_factory=dict)
    error_stage: str | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records the wall-clock duration of a stage.

    Successful stages are stored under their name; failed stages under
    "_<name>_failed", so the failing stage can be identified afterwards.

    Usage:
        timings: dict[str, float] = {}
        with StageTimer("transcribe", timings):
            await do_work()
    """

    def __init__(self, stage_name: str, timings: dict[str, float]) -> None:
        self.stage_name = stage_name
        self._timings = timings
        self.duration_seconds: float = 0.0
        self._start: float = 0.0

    def __enter__(self) -> StageTimer:
        self._start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.duration_seconds = time.monotonic() - self._start
        if exc_type is not None:
            self._timings[f"_{self.stage_name}_failed"] = self.duration_seconds
        else:
            self._timings[self.stage_name] = self.duration_seconds


def failed_stage(timings: dict[str, float]) -> str | None:
    """Name of the stage recorded as failed, if any."""
    for key in timings:
        if key.startswith("_") and key.endswith("_failed"):
            return key[1 : -len("_failed")]
    return None


def log_run_metrics(metrics: RunMetrics) -> None:
    """Emit run metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated RunMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "pipeline_run",
        **asdict(metrics),
    }
    print(json.dumps(entry, ensure_ascii=False))
