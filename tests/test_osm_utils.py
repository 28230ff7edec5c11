import httpx
import pytest

import osm_utils
from osm_utils import GeocodeFailed, NominatimGeocoder, Placemark


@pytest.mark.asyncio
async def test_find_points_of_interest_sorts_by_distance(monkeypatch: pytest.MonkeyPatch) -> None:
    queries: list[str] = []

    async def fake_query(query: str, timeout: int = 25, *, user_agent: str = "") -> dict[str, object]:
        queries.append(query)
        return {
            "elements": [
                {
                    "center": {"lat": 39.8030, "lon": -89.6440},
                    "tags": {"name": "Lincoln Home", "historic": "house"},
                },
                {
                    "lat": 39.8010,
                    "lon": -89.6430,
                    "tags": {"name": "Old Mill", "man_made": "watermill"},
                },
                {"lat": 39.8011, "lon": -89.6431, "tags": {"amenity": "bench"}},
            ]
        }

    monkeypatch.setattr(osm_utils, "overpass_query", fake_query)

    pois = await osm_utils.find_points_of_interest(39.8009, -89.6429, 75)

    assert [poi.name for poi in pois] == ["Old Mill", "Lincoln Home"]
    assert pois[0].distance_m < pois[1].distance_m
    assert len(queries) == 1
    assert "around:75,39.800900,-89.642900" in queries[0]


@pytest.mark.asyncio
async def test_find_points_of_interest_deduplicates_and_prefers_english_fallback(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_query(query: str, timeout: int = 25, *, user_agent: str = "") -> dict[str, object]:
        element = {"lat": 10.0, "lon": 10.0, "tags": {"name:en": "Harbour Light; Beacon"}}
        return {"elements": [element, dict(element)]}

    monkeypatch.setattr(osm_utils, "overpass_query", fake_query)

    pois = await osm_utils.find_points_of_interest(10.0, 10.0)

    assert len(pois) == 1
    assert pois[0].name == "Harbour Light"
    assert pois[0].distance_m == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_find_points_of_interest_handles_missing_elements(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_query(query: str, timeout: int = 25, *, user_agent: str = "") -> dict[str, object]:
        return {"remark": "runtime error"}

    monkeypatch.setattr(osm_utils, "overpass_query", fake_query)

    assert await osm_utils.find_points_of_interest(0.0, 0.0) == []


def test_haversine_distance_matches_known_value() -> None:
    # One degree of latitude is roughly 111 km.
    distance = osm_utils.haversine_distance_m(0.0, 0.0, 1.0, 0.0)
    assert distance == pytest.approx(111_195, rel=1e-3)
    assert osm_utils.haversine_distance_m(12.5, 45.1, 12.5, 45.1) == 0.0


def test_placemark_from_nominatim_maps_address_levels() -> None:
    placemark = osm_utils.placemark_from_nominatim(
        {
            "address": {
                "suburb": "Enos Park",
                "town": "Springfield",
                "state": "Illinois",
                "country": "United States",
            }
        }
    )

    assert placemark == Placemark(
        sub_locality="Enos Park",
        locality="Springfield",
        administrative_area="Illinois",
        country="United States",
    )


def test_placemark_from_nominatim_tolerates_garbage() -> None:
    assert osm_utils.placemark_from_nominatim(None) == Placemark()
    assert osm_utils.placemark_from_nominatim({"error": "Unable to geocode"}) == Placemark()
    assert osm_utils.placemark_from_nominatim({"address": {"city": "  "}}) == Placemark()


@pytest.mark.asyncio
async def test_nominatim_geocoder_parses_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"address": {"city": "Springfield", "state": "Illinois", "country": "United States"}},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        geocoder = NominatimGeocoder(user_agent="pins-test/1.0", client=client)
        placemark = await geocoder.reverse_geocode(39.8, -89.6)

    assert placemark.locality == "Springfield"
    assert placemark.administrative_area == "Illinois"
    assert seen[0].headers["User-Agent"] == "pins-test/1.0"
    assert seen[0].url.params["format"] == "jsonv2"
    assert seen[0].url.params["lat"] == "39.800000"


@pytest.mark.asyncio
async def test_nominatim_geocoder_raises_on_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        geocoder = NominatimGeocoder(client=client)
        with pytest.raises(GeocodeFailed):
            await geocoder.reverse_geocode(0.0, 0.0)


@pytest.mark.asyncio
async def test_nominatim_geocoder_raises_on_bad_json() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>not json</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        geocoder = NominatimGeocoder(client=client)
        with pytest.raises(GeocodeFailed):
            await geocoder.reverse_geocode(0.0, 0.0)
