from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from aiohttp import web

from api.pins import persistence_error_middleware, setup_pin_routes
from config import AppConfig, load_config
from data_access import DataAccess
from events import PHOTO_IMAGE_READY, PIN_CHANGED, EventEmitter
from image_fetcher import ImageFetcher
from observability import metrics_handler, observability_middleware, setup_logging
from osm_utils import NominatimGeocoder, OverpassPOISearch
from photo_client import PhotoSearchClient
from pin_photos import ImageSource, PhotoSearcher, PinPhotoController
from place_resolver import PlaceResolver

APP_VERSION = "1.0.0"
MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def apply_migrations(conn: sqlite3.Connection) -> None:
    """Apply SQL migrations stored in the migrations directory."""

    conn.row_factory = sqlite3.Row
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    applied = {row["id"] for row in conn.execute("SELECT id FROM schema_migrations")}
    migration_files = sorted(
        p for p in MIGRATIONS_DIR.iterdir() if p.suffix in {".sql", ".py"} and p.stem[:1].isdigit()
    )
    for path in migration_files:
        migration_id = path.stem
        if migration_id in applied:
            continue
        logging.info("Applying migration %s", migration_id)
        with conn:
            if path.suffix == ".sql":
                conn.executescript(path.read_text(encoding="utf-8"))
            else:
                namespace: dict[str, Any] = {}
                exec(path.read_text(encoding="utf-8"), namespace)
                runner = namespace.get("run")
                if not callable(runner):
                    raise ValueError(f"Migration {migration_id} missing run()")
                runner(conn)
            conn.execute(
                "INSERT INTO schema_migrations (id, applied_at) VALUES (?, ?)",
                (migration_id, datetime.now(timezone.utc).isoformat()),
            )


def open_database(db_path: str) -> sqlite3.Connection:
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    apply_migrations(conn)
    return conn


async def health_handler(request: web.Request) -> web.Response:
    data: DataAccess = request.app["data"]
    started_at: datetime = request.app["started_at"]
    uptime = (datetime.now(timezone.utc) - started_at).total_seconds()
    return web.json_response(
        {
            "ok": True,
            "version": request.app["version"],
            "uptime_s": round(uptime, 3),
            "pins": data.count_pins(),
        }
    )


def _log_event(name: str):
    def handler(**payload: Any) -> None:
        pin = payload.get("pin")
        pin_id = payload.get("pin_id") or getattr(pin, "id", None)
        logging.debug("EVENT %s pin=%s", name, pin_id)

    handler.__name__ = f"log_{name}"
    return handler


def build_app(
    conn: sqlite3.Connection,
    *,
    searcher: PhotoSearcher,
    fetcher: ImageSource,
    resolver: PlaceResolver,
    config: AppConfig | None = None,
) -> web.Application:
    config = config or AppConfig()
    data = DataAccess(conn)
    events = EventEmitter()
    events.on(PIN_CHANGED, _log_event(PIN_CHANGED))
    events.on(PHOTO_IMAGE_READY, _log_event(PHOTO_IMAGE_READY))
    photos = PinPhotoController(
        data,
        searcher,
        fetcher,
        events=events,
        static_url=config.flickr_static_url,
    )

    app = web.Application(middlewares=[observability_middleware, persistence_error_middleware])
    app["config"] = config
    app["events"] = events
    app["started_at"] = datetime.now(timezone.utc)
    app["version"] = APP_VERSION
    setup_pin_routes(app, data=data, photos=photos, resolver=resolver)
    app.router.add_get("/v1/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)

    async def cleanup_background(app: web.Application) -> None:
        await photos.aclose()
        for client in (searcher, fetcher):
            closer = getattr(client, "aclose", None)
            if closer is not None:
                await closer()

    app.on_cleanup.append(cleanup_background)
    return app


def create_app(config: AppConfig | None = None) -> web.Application:
    config = config or load_config()
    conn = open_database(config.db_path)
    searcher = PhotoSearchClient(
        config.flickr_api_key,
        base_url=config.flickr_api_url,
        timeout=config.http_timeout,
    )
    fetcher = ImageFetcher(
        timeout=config.http_timeout,
        max_concurrency=config.image_fetch_concurrency,
    )
    resolver = PlaceResolver(
        OverpassPOISearch(user_agent=config.user_agent),
        NominatimGeocoder(user_agent=config.user_agent, timeout=config.http_timeout),
        max_zoom_span=config.poi_max_zoom_span,
        poi_radius_m=config.poi_search_radius_m,
    )
    app = build_app(conn, searcher=searcher, fetcher=fetcher, resolver=resolver, config=config)

    async def close_database(app: web.Application) -> None:
        conn.close()

    app.on_cleanup.append(close_database)
    logging.info("Application configured db=%s", config.db_path)
    return app


if __name__ == "__main__":
    setup_logging()
    app_config = load_config()
    web.run_app(create_app(app_config), port=app_config.port)
