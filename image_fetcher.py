from __future__ import annotations

import asyncio
import logging

import httpx

from observability import record_image_fetch, track_image_fetch


class FetchFailed(Exception):
    """Image bytes could not be retrieved."""

    def __init__(self, cause: BaseException | str):
        super().__init__(str(cause))
        self.cause = cause


class ImageFetcher:
    """Fetches raw image payloads; one attempt per call, nothing cached."""

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        max_concurrency: int = 8,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, url: str) -> bytes:
        async with self._semaphore:
            with track_image_fetch():
                try:
                    response = await self._client.get(url)
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    record_image_fetch("failed")
                    logging.warning("IMAGE fetch failed url=%s error=%s", url, exc)
                    raise FetchFailed(exc) from exc
        data = response.content
        record_image_fetch("ok")
        logging.debug("IMAGE fetch ok url=%s bytes=%s", url, len(data))
        return data


__all__ = ["FetchFailed", "ImageFetcher"]
