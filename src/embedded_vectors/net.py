from __future__ import annotations

import logging

import httpx

from embedded_vectors.errors import NetworkError


logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = httpx.Timeout(30.0, read=300.0)


async def fetch_bytes(url: str, *, client: httpx.AsyncClient | None = None) -> bytes:
    """Download ``url`` and return the response body.

    A caller-provided ``client`` is used as-is and left open; otherwise a
    short-lived client that follows redirects (GitHub release assets redirect
    to a CDN) is created for the request.
    """

    logger.info("Downloading %s", url)
    try:
        if client is not None:
            resp = await client.get(url, follow_redirects=True)
        else:
            async with httpx.AsyncClient(
                follow_redirects=True, timeout=DOWNLOAD_TIMEOUT
            ) as owned:
                resp = await owned.get(url)
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise NetworkError(
            f"Download of {url} failed with HTTP {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        raise NetworkError(f"Download of {url} failed: {exc}") from exc

    data = resp.content
    logger.debug("Downloaded %d bytes from %s", len(data), url)
    return data


__all__ = ["DOWNLOAD_TIMEOUT", "fetch_bytes"]
