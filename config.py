from __future__ import annotations

import logging
import os
from dataclasses import dataclass

DEFAULT_FLICKR_API_URL = "https://www.flickr.com/services/rest/"
DEFAULT_FLICKR_STATIC_URL = "https://live.staticflickr.com/"
DEFAULT_USER_AGENT = "virtual-tourist/1.0 (+https://github.com/virtual-tourist/virtual-tourist)"


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError
    except ValueError:
        logging.warning("Invalid %s=%s, using %s", name, raw, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
    except ValueError:
        logging.warning("Invalid %s=%s, using %s", name, raw, default)
        return default
    return value


@dataclass(slots=True)
class AppConfig:
    flickr_api_key: str | None = None
    flickr_api_url: str = DEFAULT_FLICKR_API_URL
    flickr_static_url: str = DEFAULT_FLICKR_STATIC_URL
    db_path: str = "data/virtual_tourist.db"
    http_timeout: float = 15.0
    image_fetch_concurrency: int = 8
    poi_max_zoom_span: float = 0.065
    poi_search_radius_m: float = 75.0
    user_agent: str = DEFAULT_USER_AGENT
    port: int = 8080


def load_config() -> AppConfig:
    api_key = _env_str("FLICKR_API_KEY")
    if not api_key:
        logging.warning("FLICKR_API_KEY is not set; photo searches will fail")
    return AppConfig(
        flickr_api_key=api_key,
        flickr_api_url=_env_str("FLICKR_API_URL", DEFAULT_FLICKR_API_URL),
        flickr_static_url=_env_str("FLICKR_STATIC_URL", DEFAULT_FLICKR_STATIC_URL),
        db_path=_env_str("DB_PATH", "data/virtual_tourist.db"),
        http_timeout=_env_float("HTTP_TIMEOUT_SEC", 15.0),
        image_fetch_concurrency=_env_int("IMAGE_FETCH_CONCURRENCY", 8),
        poi_max_zoom_span=_env_float("POI_MAX_ZOOM_SPAN", 0.065),
        poi_search_radius_m=_env_float("POI_SEARCH_RADIUS_M", 75.0),
        user_agent=_env_str("GEOCODER_USER_AGENT", DEFAULT_USER_AGENT),
        port=_env_int("PORT", 8080),
    )


__all__ = ["AppConfig", "load_config"]
