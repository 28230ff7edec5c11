from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, NamedTuple

import httpx

from config import DEFAULT_USER_AGENT

OVERPASS_ENDPOINT = "https://overpass-api.de/api/interpreter"
NOMINATIM_REVERSE_ENDPOINT = "https://nominatim.openstreetmap.org/reverse"

# Tags that mark a named node as something a person would call a place.
_POI_TAG_KEYS = ("amenity", "tourism", "historic", "leisure", "shop", "man_made")


class GeocodeFailed(Exception):
    """Reverse geocoding could not be completed."""

    def __init__(self, cause: BaseException | str):
        super().__init__(str(cause))
        self.cause = cause


class PointOfInterest(NamedTuple):
    name: str
    latitude: float
    longitude: float
    distance_m: float


@dataclass(frozen=True, slots=True)
class Placemark:
    """Administrative hierarchy around a coordinate, finest to coarsest."""

    sub_locality: str | None = None
    locality: str | None = None
    administrative_area: str | None = None
    country: str | None = None


async def overpass_query(
    query: str,
    timeout: int = 25,
    *,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, Any]:
    logging.info("OVERPASS request timeout=%s query=%s", timeout, query)
    headers = {
        "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        "User-Agent": user_agent,
    }
    try:
        async with httpx.AsyncClient(timeout=timeout, headers=headers) as client:
            response = await client.post(
                OVERPASS_ENDPOINT,
                data={"data": query},
            )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logging.error("OVERPASS http_error %s", exc)
        raise RuntimeError("Overpass request failed") from exc
    try:
        return response.json()
    except ValueError as exc:
        logging.error("OVERPASS json_decode_error", exc_info=True)
        raise RuntimeError("Overpass JSON decode failed") from exc


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r_earth = 6_371_000.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r_earth * c


def _extract_name(tags: dict[str, Any]) -> str | None:
    if not isinstance(tags, dict):
        return None
    for candidate in (tags.get("name"), tags.get("name:en")):
        if not isinstance(candidate, str):
            continue
        text = candidate.strip()
        if not text:
            continue
        for delimiter in (";", "/"):
            if delimiter in text:
                text = text.split(delimiter, 1)[0].strip()
        if text:
            return text
    return None


def _extract_center(element: dict[str, Any]) -> tuple[float, float] | None:
    if not isinstance(element, dict):
        return None
    center = element.get("center")
    if isinstance(center, dict):
        lat = center.get("lat")
        lon = center.get("lon")
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
            return float(lat), float(lon)
    lat = element.get("lat")
    lon = element.get("lon")
    if isinstance(lat, (int, float)) and isinstance(lon, (int, float)):
        return float(lat), float(lon)
    return None


def _format_coord(value: float) -> str:
    return f"{value:.6f}"


def _normalize_radius(radius_m: float) -> int:
    try:
        value = int(round(float(radius_m)))
    except (TypeError, ValueError):
        value = 0
    return max(1, value)


def _build_poi_query(lat: float, lon: float, radius_m: float) -> str:
    radius = _normalize_radius(radius_m)
    around = f"around:{radius},{_format_coord(lat)},{_format_coord(lon)}"
    clauses = "".join(
        f'node({around})["name"]["{key}"];way({around})["name"]["{key}"];'
        for key in _POI_TAG_KEYS
    )
    return f"[out:json][timeout:25];({clauses});out tags center;"


async def find_points_of_interest(
    lat: float,
    lon: float,
    radius_m: float = 75.0,
    *,
    user_agent: str = DEFAULT_USER_AGENT,
) -> list[PointOfInterest]:
    """Return named places around the coordinate, nearest first.

    Equal distances keep the order Overpass returned them in.
    """

    response = await overpass_query(_build_poi_query(lat, lon, radius_m), user_agent=user_agent)
    elements = response.get("elements")
    if not isinstance(elements, list):
        return []
    found: list[PointOfInterest] = []
    seen: set[tuple[str, float, float]] = set()
    for element in elements:
        tags = element.get("tags") if isinstance(element, dict) else None
        name = _extract_name(tags) if isinstance(tags, dict) else None
        if not name:
            continue
        center = _extract_center(element)
        if not center:
            continue
        key = (name, center[0], center[1])
        if key in seen:
            continue
        seen.add(key)
        distance = haversine_distance_m(lat, lon, center[0], center[1])
        found.append(PointOfInterest(name, center[0], center[1], distance))
    found.sort(key=lambda poi: poi.distance_m)
    return found


def _pick(address: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = address.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def placemark_from_nominatim(data: Any) -> Placemark:
    if not isinstance(data, dict):
        return Placemark()
    address = data.get("address")
    if not isinstance(address, dict):
        return Placemark()
    return Placemark(
        sub_locality=_pick(address, ("neighbourhood", "suburb", "quarter", "city_district")),
        locality=_pick(address, ("city", "town", "village", "hamlet", "municipality")),
        administrative_area=_pick(address, ("state", "region", "province", "territory")),
        country=_pick(address, ("country",)),
    )


class OverpassPOISearch:
    def __init__(self, *, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._user_agent = user_agent

    async def nearby(self, lat: float, lon: float, radius_m: float) -> list[PointOfInterest]:
        return await find_points_of_interest(lat, lon, radius_m, user_agent=self._user_agent)


class NominatimGeocoder:
    """Reverse geocoder honoring Nominatim's one-request-per-second policy."""

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 15.0,
        language: str = "en",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._timeout = timeout
        self._language = language
        self._client = client
        self._semaphore = asyncio.Semaphore(1)
        self._last_request_at: float | None = None

    async def reverse_geocode(self, lat: float, lon: float) -> Placemark:
        params = {
            "lat": _format_coord(lat),
            "lon": _format_coord(lon),
            "format": "jsonv2",
            "zoom": "18",
            "addressdetails": "1",
            "accept-language": self._language,
        }
        headers = {"User-Agent": self._user_agent}
        async with self._semaphore:
            if self._last_request_at is not None:
                elapsed = time.monotonic() - self._last_request_at
                if elapsed < 1:
                    await asyncio.sleep(1 - elapsed)
            try:
                if self._client is not None:
                    response = await self._client.get(
                        NOMINATIM_REVERSE_ENDPOINT, params=params, headers=headers
                    )
                else:
                    async with httpx.AsyncClient(timeout=self._timeout) as client:
                        response = await client.get(
                            NOMINATIM_REVERSE_ENDPOINT, params=params, headers=headers
                        )
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as exc:
                logging.warning(
                    "REVGEO fail provider=osm lat=%.5f lon=%.5f error=%s", lat, lon, exc
                )
                raise GeocodeFailed(exc) from exc
            except ValueError as exc:
                logging.warning("REVGEO json_decode_error lat=%.5f lon=%.5f", lat, lon)
                raise GeocodeFailed(exc) from exc
            finally:
                self._last_request_at = time.monotonic()

        placemark = placemark_from_nominatim(data)
        logging.info(
            "REVGEO ok provider=osm lat=%.5f lon=%.5f city=%s state=%s country=%s",
            lat,
            lon,
            placemark.locality,
            placemark.administrative_area,
            placemark.country,
        )
        return placemark


__all__ = [
    "GeocodeFailed",
    "PointOfInterest",
    "Placemark",
    "overpass_query",
    "haversine_distance_m",
    "find_points_of_interest",
    "placemark_from_nominatim",
    "OverpassPOISearch",
    "NominatimGeocoder",
]
