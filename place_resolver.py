"""Human-readable titles for freshly dropped pins."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from osm_utils import GeocodeFailed, Placemark, PointOfInterest

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "Somewhere"
PLACEHOLDER_COUNTRY = "Planet Earth"
_COUNTRY_ALIASES = {"United States": "USA", "United States of America": "USA"}


class POISearch(Protocol):
    async def nearby(self, lat: float, lon: float, radius_m: float) -> list[PointOfInterest]: ...


class Geocoder(Protocol):
    async def reverse_geocode(self, lat: float, lon: float) -> Placemark: ...


@dataclass(frozen=True, slots=True)
class ResolvedPlace:
    title: str
    subtitle: str
    latitude: float
    longitude: float
    poi_name: str | None = None


def _clean(value: str | None) -> str:
    return value.strip() if isinstance(value, str) else ""


def make_pin_titles(poi_name: str | None, placemark: Placemark | None) -> tuple[str, str]:
    """Build ``(title, subtitle)`` from the most specific name available.

    Precedence is POI name, neighborhood, city, state, then a placeholder.
    The subtitle carries the next coarser context, e.g. ``"in Illinois, USA"``.
    """

    place = placemark or Placemark()
    name = _clean(poi_name)
    neighborhood = _clean(place.sub_locality)
    city = _clean(place.locality)
    state = _clean(place.administrative_area)
    country = _clean(place.country) or PLACEHOLDER_COUNTRY
    country = _COUNTRY_ALIASES.get(country, country)

    in_on = "on" if country == PLACEHOLDER_COUNTRY and not state and not city else "in"

    if name:
        title, context_parts = name, (city, state, country)
    elif neighborhood:
        title, context_parts = neighborhood, (city, state, country)
    elif city:
        title, context_parts = city, (state, country)
    elif state:
        title, context_parts = state, (country,)
    else:
        title, context_parts = PLACEHOLDER_TITLE, (country,)

    subtitle = f"{in_on} " + ", ".join(part for part in context_parts if part)
    return title, subtitle


class PlaceResolver:
    def __init__(
        self,
        poi_search: POISearch,
        geocoder: Geocoder,
        *,
        max_zoom_span: float = 0.065,
        poi_radius_m: float = 75.0,
    ) -> None:
        self._poi_search = poi_search
        self._geocoder = geocoder
        self.max_zoom_span = max_zoom_span
        self.poi_radius_m = poi_radius_m

    async def _nearest_poi(self, lat: float, lon: float, span: float | None) -> PointOfInterest | None:
        # Zoomed out too far for points of interest to be told apart on the map.
        if span is None or span >= self.max_zoom_span:
            return None
        try:
            candidates = await self._poi_search.nearby(lat, lon, self.poi_radius_m)
        except Exception as exc:
            logger.warning("POI search failed lat=%.5f lon=%.5f error=%s", lat, lon, exc)
            return None
        best: PointOfInterest | None = None
        for candidate in candidates:
            if not _clean(candidate.name):
                continue
            if best is None or candidate.distance_m < best.distance_m:
                best = candidate
        return best

    async def _placemark(self, lat: float, lon: float) -> Placemark:
        try:
            return await self._geocoder.reverse_geocode(lat, lon)
        except GeocodeFailed as exc:
            logger.warning("REVGEO degraded lat=%.5f lon=%.5f error=%s", lat, lon, exc.cause)
        except Exception as exc:
            logger.warning("REVGEO unexpected failure lat=%.5f lon=%.5f error=%s", lat, lon, exc)
        return Placemark()

    async def resolve(self, lat: float, lon: float, span: float | None = None) -> ResolvedPlace:
        poi = await self._nearest_poi(lat, lon, span)
        if poi is not None:
            lat, lon = poi.latitude, poi.longitude
        placemark = await self._placemark(lat, lon)
        title, subtitle = make_pin_titles(poi.name if poi else None, placemark)
        logger.info("PIN place resolved title=%s subtitle=%s", title, subtitle)
        return ResolvedPlace(
            title=title,
            subtitle=subtitle,
            latitude=lat,
            longitude=lon,
            poi_name=poi.name if poi else None,
        )


__all__ = [
    "POISearch",
    "Geocoder",
    "ResolvedPlace",
    "PlaceResolver",
    "make_pin_titles",
    "PLACEHOLDER_TITLE",
    "PLACEHOLDER_COUNTRY",
]
