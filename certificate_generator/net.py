"""Network-related helpers."""

from __future__ import annotations

import errno
import logging
import time

import requests

from .errors import ResourceLoadError

LOGGER = logging.getLogger(__name__)

DISCONNECT_ERRNOS = {
    errno.EPIPE,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
}
if hasattr(errno, "WSAECONNRESET"):
    DISCONNECT_ERRNOS.add(errno.WSAECONNRESET)  # pragma: no cover

FETCH_CHUNK_BYTES = 64 * 1024


def is_client_disconnect(exc: BaseException) -> bool:
    if isinstance(exc, (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, TimeoutError)):
        return True
    return isinstance(exc, OSError) and exc.errno in DISCONNECT_ERRNOS


def fetch_bytes(url: str, timeout_s: float, max_bytes: int) -> bytes:
    """Download ``url`` with a connect/read timeout, refusing bodies larger than ``max_bytes``."""
    deadline = time.monotonic() + timeout_s
    try:
        with requests.get(url, timeout=timeout_s, stream=True) as response:
            response.raise_for_status()
            declared = response.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) > max_bytes:
                raise ResourceLoadError(f"{url} is larger than {max_bytes} bytes.")

            chunks = []
            received = 0
            for chunk in response.iter_content(chunk_size=FETCH_CHUNK_BYTES):
                received += len(chunk)
                if received > max_bytes:
                    raise ResourceLoadError(f"{url} is larger than {max_bytes} bytes.")
                if time.monotonic() > deadline:
                    raise requests.Timeout(f"read exceeded {timeout_s:g}s")
                chunks.append(chunk)
    except requests.Timeout as exc:
        raise ResourceLoadError(f"Timed out after {timeout_s:g}s fetching {url}.") from exc
    except requests.RequestException as exc:
        raise ResourceLoadError(f"Could not fetch {url}: {exc}") from exc

    LOGGER.debug("Fetched %d bytes from %s", received, url)
    return b"".join(chunks)
