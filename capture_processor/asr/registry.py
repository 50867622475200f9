"""Transcription engine registry with configuration-driven construction.

Maps backend names to engine classes. Use get_engine() to instantiate an
engine by name, or build_gateway() for the standard async-then-streaming
routing.
"""

from capture_processor.asr.async_job import AsyncTranscriptionClient
from capture_processor.asr.gateway import TranscriptionGateway
from capture_processor.asr.interface import TranscriptionEngine
from capture_processor.asr.streaming import StreamingTranscriptionClient
from capture_processor.utils.errors import ConfigurationError

ENGINES: dict[str, type[TranscriptionEngine]] = {
    "async": AsyncTranscriptionClient,
    "streaming": StreamingTranscriptionClient,
}


def get_engine(backend: str, **kwargs: object) -> TranscriptionEngine:
    """Create an engine instance by backend name.

    Args:
        backend: Backend name ("async" or "streaming").
        **kwargs: Engine-specific configuration passed to the constructor.

    Returns:
        An initialized TranscriptionEngine.

    Raises:
        ConfigurationError: If the backend name is not registered.
    """
    engine_cls = ENGINES.get(backend)
    if not engine_cls:
        available = ", ".join(sorted(ENGINES.keys()))
        raise ConfigurationError(
            f"Unknown transcription backend: '{backend}'. Available: {available}",
            backend=backend,
        )
    return engine_cls(**kwargs)


def build_gateway(**kwargs: object) -> TranscriptionGateway:
    """Build the default gateway with both engines configured from the environment.

    Keyword arguments (e.g. http_client) are passed to both engines.
    """
    return TranscriptionGateway(
        async_engine=get_engine("async", **kwargs),
        streaming_engine=get_engine("streaming", **kwargs),
    )
