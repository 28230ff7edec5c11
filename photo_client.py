from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from config import DEFAULT_FLICKR_API_URL, DEFAULT_FLICKR_STATIC_URL
from radius_ladder import format_radius

PHOTOS_PER_PAGE = 20

_CALLBACK_RE = re.compile(r"^\s*jsonFlickrApi\s*\((?P<body>.*)\)\s*;?\s*$", re.DOTALL)


class SearchFailed(Exception):
    """Photo search transport or payload error."""

    def __init__(self, cause: BaseException | str):
        super().__init__(str(cause))
        self.cause = cause


@dataclass(frozen=True, slots=True)
class SearchItem:
    remote_id: str
    server: str
    secret: str
    title: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(slots=True)
class SearchResult:
    items: list[SearchItem] = field(default_factory=list)
    page: int = 1
    total_pages: int = 1
    total_results: int = 0


def photo_url(
    server: str,
    remote_id: str,
    secret: str,
    *,
    base_url: str = DEFAULT_FLICKR_STATIC_URL,
) -> str:
    return f"{base_url.rstrip('/')}/{server}/{remote_id}_{secret}_b.jpg"


def strip_callback(text: str) -> str:
    """Remove the ``jsonFlickrApi( ... )`` wrapper if the body carries one."""

    match = _CALLBACK_RE.match(text)
    if match:
        return match.group("body")
    return text


def _to_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _parse_item(raw: Any) -> SearchItem | None:
    if not isinstance(raw, dict):
        return None
    remote_id = raw.get("id")
    server = raw.get("server")
    secret = raw.get("secret")
    if remote_id in (None, "") or server in (None, "") or secret in (None, ""):
        return None
    latitude = _to_float(raw.get("latitude"))
    longitude = _to_float(raw.get("longitude"))
    # Flickr reports 0/0 for photos without a geotag.
    if latitude is None or longitude is None or (latitude == 0 and longitude == 0):
        latitude = longitude = None
    title = raw.get("title")
    return SearchItem(
        remote_id=str(remote_id),
        server=str(server),
        secret=str(secret),
        title=(title.strip() or None) if isinstance(title, str) else None,
        latitude=latitude,
        longitude=longitude,
    )


def parse_search_body(text: str) -> SearchResult:
    try:
        payload = json.loads(strip_callback(text))
    except ValueError as exc:
        raise SearchFailed(exc) from exc
    if not isinstance(payload, dict):
        raise SearchFailed("unexpected payload type")
    if payload.get("stat") == "fail":
        raise SearchFailed(
            f"flickr error code={payload.get('code')} message={payload.get('message')}"
        )
    photos = payload.get("photos")
    if not isinstance(photos, dict):
        raise SearchFailed("payload has no photos object")
    raw_items = photos.get("photo")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise SearchFailed("photos.photo is not a list")
    items = [item for item in (_parse_item(raw) for raw in raw_items) if item is not None]
    return SearchResult(
        items=items,
        page=max(1, _to_int(photos.get("page"), 1)),
        total_pages=max(1, _to_int(photos.get("pages"), 1)),
        total_results=max(0, _to_int(photos.get("total"), len(items))),
    )


class PhotoSearchClient:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_FLICKR_API_URL,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _params(self, lat: float, lon: float, radius: float, page: int) -> dict[str, str]:
        return {
            "method": "flickr.photos.search",
            "api_key": self._api_key or "",
            "lat": f"{lat:.6f}",
            "lon": f"{lon:.6f}",
            "radius": format_radius(radius),
            "per_page": str(PHOTOS_PER_PAGE),
            "page": str(max(1, int(page))),
            "extras": "geo",
            "format": "json",
        }

    async def search(self, lat: float, lon: float, radius: float, page: int = 1) -> SearchResult:
        if not self._api_key:
            raise SearchFailed("Flickr API key is not configured")
        params = self._params(lat, lon, radius, page)
        logging.info(
            "PHOTOS search lat=%.5f lon=%.5f radius=%s page=%s",
            lat,
            lon,
            params["radius"],
            params["page"],
        )
        try:
            response = await self._client.get(self._base_url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logging.warning("PHOTOS search http_error %s", exc)
            raise SearchFailed(exc) from exc
        result = parse_search_body(response.text)
        logging.info(
            "PHOTOS search ok items=%s page=%s pages=%s total=%s",
            len(result.items),
            result.page,
            result.total_pages,
            result.total_results,
        )
        return result


__all__ = [
    "PHOTOS_PER_PAGE",
    "SearchFailed",
    "SearchItem",
    "SearchResult",
    "PhotoSearchClient",
    "parse_search_body",
    "photo_url",
    "strip_callback",
]
