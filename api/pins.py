from __future__ import annotations

import logging
import math
from typing import Any

from aiohttp import web

from data_access import DataAccess, PersistenceFailed
from image_fetcher import FetchFailed
from imgio import render_thumbnail
from observability import log_exc
from pin_photos import PinPhotoController
from place_resolver import PlaceResolver


def _json_error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


def _ensure_data(app: web.Application) -> DataAccess:
    data = app.get("data")
    if not data:
        raise RuntimeError("Data access is not configured")
    return data


def _ensure_controller(app: web.Application) -> PinPhotoController:
    controller = app.get("photos")
    if not controller:
        raise RuntimeError("Photo controller is not configured")
    return controller


def _ensure_resolver(app: web.Application) -> PlaceResolver:
    resolver = app.get("resolver")
    if not resolver:
        raise RuntimeError("Place resolver is not configured")
    return resolver


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _coerce_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    return number


def _pin_payload(data: DataAccess, pin_id: str, **extra: Any) -> web.Response:
    pin = data.get_pin(pin_id)
    if pin is None:
        return _json_error(404, "not_found", "Pin not found.")
    return web.json_response({**extra, "pin": pin.to_dict()})


async def handle_get_viewport(request: web.Request) -> web.Response:
    viewport = _ensure_data(request.app).get_viewport()
    if viewport is None:
        return _json_error(404, "not_found", "No map viewport stored yet.")
    return web.json_response(viewport)


async def handle_put_viewport(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    if payload is None:
        return _json_error(400, "invalid_json", "Expected a JSON object.")
    try:
        viewport = _ensure_data(request.app).set_viewport(payload)
    except ValueError as exc:
        return _json_error(400, "invalid_viewport", str(exc))
    return web.json_response(viewport)


async def handle_create_pin(request: web.Request) -> web.Response:
    payload = await _read_json(request)
    if payload is None:
        return _json_error(400, "invalid_json", "Expected a JSON object.")
    lat = _coerce_float(payload.get("lat"))
    lon = _coerce_float(payload.get("lon"))
    if lat is None or lon is None or not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        return _json_error(400, "invalid_coordinate", "lat and lon must be valid degrees.")
    span: float | None = None
    if payload.get("span") is not None:
        span = _coerce_float(payload.get("span"))
        if span is None or span < 0:
            return _json_error(400, "invalid_span", "span must be a non-negative number.")

    place = await _ensure_resolver(request.app).resolve(lat, lon, span)
    data = _ensure_data(request.app)
    pin = data.create_pin(
        latitude=place.latitude,
        longitude=place.longitude,
        title=place.title,
        subtitle=place.subtitle,
    )
    _ensure_controller(request.app).schedule_find_photos(pin.id)
    return web.json_response({"pin": pin.to_dict()}, status=201)


async def handle_list_pins(request: web.Request) -> web.Response:
    pins = _ensure_data(request.app).list_pins()
    return web.json_response({"pins": [pin.to_dict() for pin in pins]})


async def handle_get_pin(request: web.Request) -> web.Response:
    return _pin_payload(_ensure_data(request.app), request.match_info["pin_id"])


async def handle_delete_pin(request: web.Request) -> web.Response:
    pin_id = request.match_info["pin_id"]
    deleted = await _ensure_controller(request.app).delete_pin(pin_id)
    if not deleted:
        return _json_error(404, "not_found", "Pin not found.")
    return web.Response(status=204)


async def handle_list_photos(request: web.Request) -> web.Response:
    pin_id = request.match_info["pin_id"]
    data = _ensure_data(request.app)
    pin = data.get_pin(pin_id)
    if pin is None:
        return _json_error(404, "not_found", "Pin not found.")
    photos = data.list_photos(pin_id)
    return web.json_response(
        {"pin": pin.to_dict(), "photos": [photo.to_dict() for photo in photos]}
    )


async def handle_find_photos(request: web.Request) -> web.Response:
    pin_id = request.match_info["pin_id"]
    data = _ensure_data(request.app)
    if data.get_pin(pin_id) is None:
        return _json_error(404, "not_found", "Pin not found.")
    attached = await _ensure_controller(request.app).find_photos(pin_id)
    return _pin_payload(data, pin_id, attached=attached)


async def handle_refresh_photos(request: web.Request) -> web.Response:
    pin_id = request.match_info["pin_id"]
    data = _ensure_data(request.app)
    if data.get_pin(pin_id) is None:
        return _json_error(404, "not_found", "Pin not found.")
    attached = await _ensure_controller(request.app).new_collection(pin_id)
    return _pin_payload(data, pin_id, attached=attached)


async def handle_delete_photo(request: web.Request) -> web.Response:
    photo = await _ensure_controller(request.app).delete_photo(request.match_info["photo_id"])
    if photo is None:
        return _json_error(404, "not_found", "Photo not found.")
    return web.Response(status=204)


async def handle_photo_image(request: web.Request) -> web.Response:
    photo_id = request.match_info["photo_id"]
    thumb_raw = request.query.get("thumb")
    thumb: int | None = None
    if thumb_raw is not None:
        try:
            thumb = int(thumb_raw)
            if thumb <= 0:
                raise ValueError
        except ValueError:
            return _json_error(400, "invalid_thumb", "thumb must be a positive integer.")
    try:
        photo = await _ensure_controller(request.app).load_image(photo_id)
    except FetchFailed as exc:
        logging.warning("PHOTO image unavailable id=%s error=%s", photo_id, exc.cause)
        return _json_error(502, "fetch_failed", "Image could not be fetched.")
    if photo is None:
        return _json_error(404, "not_found", "Photo not found.")
    if photo.image_data is None:
        # Photo was deleted while its image was being fetched.
        return _json_error(404, "not_found", "Photo not found.")
    if thumb is not None:
        body = render_thumbnail(photo.image_data, thumb)
        return web.Response(body=body, content_type="image/jpeg")
    return web.Response(
        body=photo.image_data,
        content_type=photo.content_type or "application/octet-stream",
    )


@web.middleware
async def persistence_error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except PersistenceFailed as exc:
        log_exc("persistence_failed", exc)
        return _json_error(500, "persistence_failed", "Local storage is unavailable.")


def setup_pin_routes(
    app: web.Application,
    *,
    data: DataAccess,
    photos: PinPhotoController,
    resolver: PlaceResolver,
) -> None:
    app["data"] = data
    app["photos"] = photos
    app["resolver"] = resolver
    app.router.add_get("/v1/map", handle_get_viewport)
    app.router.add_put("/v1/map", handle_put_viewport)
    app.router.add_post("/v1/pins", handle_create_pin)
    app.router.add_get("/v1/pins", handle_list_pins)
    app.router.add_get("/v1/pins/{pin_id}", handle_get_pin)
    app.router.add_delete("/v1/pins/{pin_id}", handle_delete_pin)
    app.router.add_get("/v1/pins/{pin_id}/photos", handle_list_photos)
    app.router.add_post("/v1/pins/{pin_id}/photos/find", handle_find_photos)
    app.router.add_post("/v1/pins/{pin_id}/photos/refresh", handle_refresh_photos)
    app.router.add_delete("/v1/photos/{photo_id}", handle_delete_photo)
    app.router.add_get("/v1/photos/{photo_id}/image", handle_photo_image)


__all__ = ["setup_pin_routes", "persistence_error_middleware"]
