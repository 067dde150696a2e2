"""Downloads stored documents so a pipeline run can re-enter from the image.

Uploads land in external object storage; the pipeline only keeps their URLs.
``file://`` URLs and bare paths are read from local disk, ``http(s)`` URLs are
fetched with httpx.
"""

import asyncio
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from ekyc_ocr.exceptions import DocumentFetchError
from ekyc_ocr.utils.logger import get_logger

logger = get_logger(__name__)


class DocumentFetcher:
    """Fetches document bytes by URL.

    Args:
        timeout_s: HTTP timeout in seconds.
        client: Optional shared ``httpx.AsyncClient``; one is created per
            request when omitted.
    """

    def __init__(
        self, timeout_s: float = 20.0, client: httpx.AsyncClient | None = None
    ) -> None:
        self.timeout_s = timeout_s
        self._client = client

    async def fetch(self, url: str) -> bytes:
        """Return the raw bytes stored at ``url``.

        Raises:
            DocumentFetchError: If the document cannot be read.
        """
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            return await self._fetch_http(url)
        if parsed.scheme in ("", "file"):
            path = Path(unquote(parsed.path) if parsed.scheme == "file" else url)
            return await self._fetch_file(path, url)
        raise DocumentFetchError(f"Unsupported URL scheme: {parsed.scheme}", url)

    async def _fetch_http(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DocumentFetchError(f"Download failed: {exc}", url) from exc

        logger.debug("Fetched %d bytes from %s", len(response.content), url)
        return response.content

    async def _fetch_file(self, path: Path, url: str) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise DocumentFetchError(f"Cannot read document: {exc}", url) from exc
