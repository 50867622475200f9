"""Speech recognition backends and routing."""

from capture_processor.asr.registry import build_gateway, get_engine

__all__ = ["build_gateway", "get_engine"]
