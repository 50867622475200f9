"""Loading recorded clips from a URL or a local path."""

import logging
from pathlib import Path

import httpx

from capture_processor.utils.errors import AudioFetchError, TransientNetworkError
from capture_processor.utils.http import request_with_retry

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60.0


def is_remote(source_ref: str) -> bool:
    return source_ref.startswith(("http://", "https://"))


async def load_audio(
    source_ref: str, client: httpx.AsyncClient | None = None
) -> bytes:
    """Return the bytes of a recorded clip.

    Args:
        source_ref: http(s) URL or filesystem path of the clip.
        client: Optional AsyncClient for downloads (a private one is created
            and closed if omitted).

    Returns:
        The clip contents.

    Raises:
        AudioFetchError: If the clip cannot be read or downloaded.
    """
    if not is_remote(source_ref):
        try:
            return Path(source_ref).read_bytes()
        except OSError as exc:
            raise AudioFetchError(
                f"Failed to read audio file: {exc}", source_ref=source_ref
            ) from exc

    if client is None:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS) as own_client:
            return await _download(own_client, source_ref)
    return await _download(client, source_ref)


async def _download(client: httpx.AsyncClient, url: str) -> bytes:
    try:
        response = await request_with_retry(client, "GET", url)
    except TransientNetworkError as exc:
        raise AudioFetchError(
            f"Failed to download audio: {exc}", source_ref=url
        ) from exc

    if not response.is_success:
        raise AudioFetchError(
            f"Failed to download audio: HTTP {response.status_code}",
            source_ref=url,
        )

    logger.info("Downloaded %d bytes of audio", len(response.content))
    return response.content
