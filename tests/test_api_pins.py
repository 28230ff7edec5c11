import io
import os
import sqlite3
import sys

import pytest
from aiohttp.test_utils import TestClient, TestServer
from PIL import Image
from prometheus_client import REGISTRY

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from image_fetcher import FetchFailed
from main import apply_migrations, build_app
from osm_utils import Placemark, PointOfInterest
from photo_client import SearchItem, SearchResult
from place_resolver import PlaceResolver


def _png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), "green").save(buffer, format="PNG")
    return buffer.getvalue()


PNG_BYTES = _png()


class DummySearcher:
    def __init__(self) -> None:
        self.calls: list[tuple[float, float, float, int]] = []

    async def search(self, lat: float, lon: float, radius: float, page: int = 1) -> SearchResult:
        self.calls.append((lat, lon, radius, page))
        items = [
            SearchItem(
                remote_id=f"{page}-{n}",
                server="65535",
                secret="abc",
                title=f"Photo {n}",
                latitude=lat + (n + 1) * 0.0001,
                longitude=lon,
            )
            for n in range(20)
        ]
        return SearchResult(items=items, page=page, total_pages=2, total_results=40)


class DummyFetcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail

    async def fetch(self, url: str) -> bytes:
        if self.fail:
            raise FetchFailed("HTTP 404")
        return PNG_BYTES


class DummyPOISearch:
    async def nearby(self, lat: float, lon: float, radius_m: float):
        return [PointOfInterest("Old Mill", 39.8001, -89.6001, 14.0)]


class DummyGeocoder:
    async def reverse_geocode(self, lat: float, lon: float) -> Placemark:
        return Placemark(locality="Springfield", administrative_area="Illinois", country="United States")


def _make_app(*, fetcher: DummyFetcher | None = None):
    conn = sqlite3.connect(":memory:")
    apply_migrations(conn)
    searcher = DummySearcher()
    app = build_app(
        conn,
        searcher=searcher,
        fetcher=fetcher or DummyFetcher(),
        resolver=PlaceResolver(DummyPOISearch(), DummyGeocoder()),
    )
    return app, conn, searcher


async def _create_pin(client: TestClient, app, **payload) -> dict:
    body = {"lat": 39.8, "lon": -89.6, "span": 0.01}
    body.update(payload)
    response = await client.post("/v1/pins", json=body)
    assert response.status == 201
    created = await response.json()
    await app["photos"].wait_idle()
    return created["pin"]


@pytest.mark.asyncio
async def test_create_pin_resolves_title_and_loads_photos():
    app, _, searcher = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            pin = await _create_pin(client, app)
            assert pin["title"] == "Old Mill"
            assert pin["subtitle"] == "in Springfield, Illinois, USA"
            assert (pin["latitude"], pin["longitude"]) == (39.8001, -89.6001)

            response = await client.get(f"/v1/pins/{pin['id']}/photos")
            assert response.status == 200
            payload = await response.json()

    assert len(payload["photos"]) == 20
    assert payload["pin"]["is_new"] is False
    assert payload["pin"]["number_of_photos"] == 20
    assert all(photo["has_image"] for photo in payload["photos"])
    assert "image_data" not in payload["photos"][0]
    distances = [photo["distance_m"] for photo in payload["photos"]]
    assert distances == sorted(distances)
    assert searcher.calls[0][3] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"lat": 91, "lon": 0},
        {"lat": 0, "lon": -181},
        {"lat": "10", "lon": 0},
        {"lat": 10, "lon": 0, "span": -1},
        ["not", "an", "object"],
    ],
)
async def test_create_pin_validates_input(body):
    app, conn, _ = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            response = await client.post("/v1/pins", json=body)
            assert response.status == 400
            payload = await response.json()

    assert payload["error"].startswith("invalid_")
    assert conn.execute("SELECT COUNT(*) FROM pins").fetchone()[0] == 0


@pytest.mark.asyncio
async def test_list_and_get_pins():
    app, _, _ = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            pin = await _create_pin(client, app)

            listing = await (await client.get("/v1/pins")).json()
            assert [item["id"] for item in listing["pins"]] == [pin["id"]]

            response = await client.get(f"/v1/pins/{pin['id']}")
            assert response.status == 200
            assert (await response.json())["pin"]["id"] == pin["id"]

            missing = await client.get("/v1/pins/nope")
            assert missing.status == 404
            missing_photos = await client.get("/v1/pins/nope/photos")
            assert missing_photos.status == 404


@pytest.mark.asyncio
async def test_find_and_refresh_photos():
    app, _, searcher = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            pin = await _create_pin(client, app)

            response = await client.post(f"/v1/pins/{pin['id']}/photos/find")
            assert response.status == 200
            found = await response.json()
            assert found["attached"] == 20
            assert found["pin"]["current_page"] == 2
            await app["photos"].wait_idle()

            response = await client.post(f"/v1/pins/{pin['id']}/photos/refresh")
            assert response.status == 200
            refreshed = await response.json()
            await app["photos"].wait_idle()

            photos = await (await client.get(f"/v1/pins/{pin['id']}/photos")).json()

            missing = await client.post("/v1/pins/nope/photos/find")
            assert missing.status == 404

    assert refreshed["pin"]["current_page"] == 1
    assert [call[3] for call in searcher.calls] == [1, 2, 1]
    assert {photo["remote_id"] for photo in photos["photos"]} == {f"1-{n}" for n in range(20)}
    assert photos["pin"]["number_of_photos"] == 20


@pytest.mark.asyncio
async def test_photo_image_and_thumbnail():
    app, _, _ = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            pin = await _create_pin(client, app)
            photos = await (await client.get(f"/v1/pins/{pin['id']}/photos")).json()
            photo_id = photos["photos"][0]["id"]

            response = await client.get(f"/v1/photos/{photo_id}/image")
            assert response.status == 200
            assert response.headers["Content-Type"] == "image/png"
            assert await response.read() == PNG_BYTES

            response = await client.get(f"/v1/photos/{photo_id}/image", params={"thumb": "32"})
            assert response.status == 200
            assert response.headers["Content-Type"] == "image/jpeg"
            with Image.open(io.BytesIO(await response.read())) as thumb:
                assert max(thumb.size) == 32

            bad = await client.get(f"/v1/photos/{photo_id}/image", params={"thumb": "big"})
            assert bad.status == 400

            missing = await client.get("/v1/photos/nope/image")
            assert missing.status == 404


@pytest.mark.asyncio
async def test_photo_image_fetch_failure_returns_502():
    app, _, _ = _make_app(fetcher=DummyFetcher(fail=True))

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            pin = await _create_pin(client, app)
            photos = await (await client.get(f"/v1/pins/{pin['id']}/photos")).json()
            assert photos["pin"]["number_of_photos"] == 0
            photo_id = photos["photos"][0]["id"]

            response = await client.get(f"/v1/photos/{photo_id}/image")
            assert response.status == 502
            assert (await response.json())["error"] == "fetch_failed"


@pytest.mark.asyncio
async def test_delete_photo_and_pin():
    app, conn, _ = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            pin = await _create_pin(client, app)
            photos = await (await client.get(f"/v1/pins/{pin['id']}/photos")).json()
            photo_id = photos["photos"][0]["id"]

            response = await client.delete(f"/v1/photos/{photo_id}")
            assert response.status == 204
            again = await client.delete(f"/v1/photos/{photo_id}")
            assert again.status == 404

            current = await (await client.get(f"/v1/pins/{pin['id']}")).json()
            assert current["pin"]["number_of_photos"] == 19

            response = await client.delete(f"/v1/pins/{pin['id']}")
            assert response.status == 204
            gone = await client.get(f"/v1/pins/{pin['id']}")
            assert gone.status == 404
            again = await client.delete(f"/v1/pins/{pin['id']}")
            assert again.status == 404

    assert conn.execute("SELECT COUNT(*) FROM photos").fetchone()[0] == 0


@pytest.mark.asyncio
async def test_viewport_round_trip():
    app, _, _ = _make_app()
    viewport = {"longitude": -89.6, "latitude": 39.8, "width": 1.5, "height": 0.75}

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            missing = await client.get("/v1/map")
            assert missing.status == 404

            response = await client.put("/v1/map", json=viewport)
            assert response.status == 200

            stored = await (await client.get("/v1/map")).json()
            assert stored == viewport

            bad = await client.put("/v1/map", json={"longitude": 0, "latitude": 0, "width": -1, "height": 1})
            assert bad.status == 400


@pytest.mark.asyncio
async def test_persistence_failure_maps_to_500():
    app, conn, _ = _make_app()
    conn.execute("DROP TABLE settings")

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            response = await client.put(
                "/v1/map", json={"longitude": 0, "latitude": 0, "width": 1, "height": 1}
            )
            assert response.status == 500
            payload = await response.json()

    assert payload["error"] == "persistence_failed"


@pytest.mark.asyncio
async def test_health_and_metrics():
    app, _, _ = _make_app()

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            await _create_pin(client, app)

            response = await client.get("/v1/health")
            assert response.status == 200
            health = await response.json()

            metrics = await client.get("/metrics")
            text = await metrics.text()

    assert health["ok"] is True
    assert health["pins"] == 1
    assert health["version"]
    assert metrics.status == 200
    searches = REGISTRY.get_sample_value("photo_searches_total", {"path": "new", "outcome": "ok"})
    assert searches is not None and searches >= 1
    assert "image_fetches_total" in text
    assert "http_requests_total" in text
