from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import radius_ladder

_UNSET = object()

# Distance assigned to photos without a geotag; sorts them after every located photo.
UNKNOWN_DISTANCE_M = 1_000_000_000.0

VIEWPORT_KEY = "current_map"
VIEWPORT_FIELDS = ("longitude", "latitude", "width", "height")


class PersistenceFailed(Exception):
    """A write to the local store did not complete."""

    def __init__(self, cause: BaseException | str):
        super().__init__(str(cause))
        self.cause = cause


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Pin:
    id: str
    latitude: float
    longitude: float
    title: str
    subtitle: str
    is_new: bool
    radius_index: int
    current_page: int
    number_of_pages: int
    number_of_photos: int
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Pin":
        return cls(
            id=str(row["id"]),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            title=str(row["title"]),
            subtitle=str(row["subtitle"]),
            is_new=bool(row["is_new"]),
            radius_index=int(row["radius_index"]),
            current_page=int(row["current_page"]),
            number_of_pages=int(row["number_of_pages"]),
            number_of_photos=int(row["number_of_photos"]),
            created_at=str(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "title": self.title,
            "subtitle": self.subtitle,
            "is_new": self.is_new,
            "radius_index": self.radius_index,
            "current_page": self.current_page,
            "number_of_pages": self.number_of_pages,
            "number_of_photos": self.number_of_photos,
            "created_at": self.created_at,
        }


@dataclass
class Photo:
    id: str
    pin_id: str
    remote_id: str
    title: str | None
    url: str
    distance_m: float
    content_type: str | None
    has_image: bool
    created_at: str
    image_data: bytes | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Photo":
        keys = row.keys()
        image_data = row["image_data"] if "image_data" in keys else None
        return cls(
            id=str(row["id"]),
            pin_id=str(row["pin_id"]),
            remote_id=str(row["remote_id"]),
            title=row["title"],
            url=str(row["url"]),
            distance_m=float(row["distance_m"]),
            content_type=row["content_type"],
            has_image=bool(row["has_image"]),
            created_at=str(row["created_at"]),
            image_data=bytes(image_data) if image_data is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pin_id": self.pin_id,
            "remote_id": self.remote_id,
            "title": self.title,
            "url": self.url,
            "distance_m": self.distance_m,
            "content_type": self.content_type,
            "has_image": self.has_image,
            "created_at": self.created_at,
        }


_PHOTO_COLUMNS = (
    "id, pin_id, remote_id, title, url, distance_m, content_type, "
    "image_data IS NOT NULL AS has_image, created_at"
)


class DataAccess:
    """Pin and photo storage on top of a single SQLite connection.

    Every mutation runs in its own transaction and re-reads the rows it
    depends on, so callers never write back a stale snapshot.
    """

    def __init__(self, connection: sqlite3.Connection):
        self.conn = connection
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON")

    @contextlib.contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with self.conn:
                yield self.conn
        except sqlite3.Error as exc:
            logging.error("DB %s failed: %s", action, exc)
            raise PersistenceFailed(exc) from exc

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------
    def create_pin(
        self,
        *,
        latitude: float,
        longitude: float,
        title: str,
        subtitle: str,
    ) -> Pin:
        pin_id = uuid4().hex
        with self._transaction("create_pin") as conn:
            conn.execute(
                """
                INSERT INTO pins (id, latitude, longitude, title, subtitle, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (pin_id, float(latitude), float(longitude), title, subtitle, _utcnow_iso()),
            )
        pin = self.get_pin(pin_id)
        if pin is None:
            raise PersistenceFailed(f"pin {pin_id} missing after insert")
        logging.info("PIN created id=%s title=%s", pin_id, title)
        return pin

    def get_pin(self, pin_id: str) -> Pin | None:
        row = self.conn.execute("SELECT * FROM pins WHERE id=?", (pin_id,)).fetchone()
        return Pin.from_row(row) if row else None

    def list_pins(self) -> list[Pin]:
        rows = self.conn.execute("SELECT * FROM pins ORDER BY created_at, rowid").fetchall()
        return [Pin.from_row(row) for row in rows]

    def count_pins(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM pins").fetchone()
        return int(row[0]) if row else 0

    def update_pin_state(
        self,
        pin_id: str,
        *,
        is_new: bool | object = _UNSET,
        radius_index: int | object = _UNSET,
        current_page: int | object = _UNSET,
        number_of_pages: int | object = _UNSET,
    ) -> Pin | None:
        """Update acquisition fields while preserving unset values."""

        columns: dict[str, Any] = {}
        if is_new is not _UNSET:
            columns["is_new"] = 1 if is_new else 0
        if radius_index is not _UNSET:
            columns["radius_index"] = radius_ladder.clamp(radius_index)  # type: ignore[arg-type]
        if current_page is not _UNSET:
            columns["current_page"] = max(1, int(current_page))  # type: ignore[arg-type]
        if number_of_pages is not _UNSET:
            columns["number_of_pages"] = max(1, int(number_of_pages))  # type: ignore[arg-type]
        if columns:
            assignments = ", ".join(f"{name}=?" for name in columns)
            with self._transaction("update_pin_state") as conn:
                cursor = conn.execute(
                    f"UPDATE pins SET {assignments} WHERE id=?",
                    (*columns.values(), pin_id),
                )
            if cursor.rowcount == 0:
                logging.warning("Attempted to update missing pin %s", pin_id)
                return None
        return self.get_pin(pin_id)

    def delete_pin(self, pin_id: str) -> bool:
        with self._transaction("delete_pin") as conn:
            cursor = conn.execute("DELETE FROM pins WHERE id=?", (pin_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logging.info("PIN deleted id=%s", pin_id)
        return deleted

    # ------------------------------------------------------------------
    # Photos
    # ------------------------------------------------------------------
    def add_photo(
        self,
        pin_id: str,
        *,
        remote_id: str,
        url: str,
        title: str | None = None,
        distance_m: float = UNKNOWN_DISTANCE_M,
    ) -> Photo | None:
        """Attach a photo to a pin.

        Returns ``None`` when the pin no longer exists or already holds a
        photo with the same ``remote_id``.
        """

        photo_id = uuid4().hex
        with self._transaction("add_photo") as conn:
            pin_exists = conn.execute("SELECT 1 FROM pins WHERE id=?", (pin_id,)).fetchone()
            if not pin_exists:
                return None
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO photos (
                    id, pin_id, remote_id, title, url, distance_m, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (photo_id, pin_id, remote_id, title, url, float(distance_m), _utcnow_iso()),
            )
        if cursor.rowcount == 0:
            return None
        return self.get_photo(photo_id)

    def get_photo(self, photo_id: str, *, with_image: bool = False) -> Photo | None:
        columns = _PHOTO_COLUMNS + (", image_data" if with_image else "")
        row = self.conn.execute(
            f"SELECT {columns} FROM photos WHERE id=?",
            (photo_id,),
        ).fetchone()
        return Photo.from_row(row) if row else None

    def list_photos(self, pin_id: str) -> list[Photo]:
        rows = self.conn.execute(
            f"""
            SELECT {_PHOTO_COLUMNS}
            FROM photos
            WHERE pin_id=?
            ORDER BY distance_m, created_at, rowid
            """,
            (pin_id,),
        ).fetchall()
        return [Photo.from_row(row) for row in rows]

    def count_photos(self, pin_id: str, *, with_image: bool = False) -> int:
        query = "SELECT COUNT(*) FROM photos WHERE pin_id=?"
        if with_image:
            query += " AND image_data IS NOT NULL"
        row = self.conn.execute(query, (pin_id,)).fetchone()
        return int(row[0]) if row else 0

    def store_image(
        self,
        photo_id: str,
        data: bytes,
        content_type: str | None = None,
    ) -> Photo | None:
        """Persist fetched bytes and count the photo on its pin.

        Bytes for a photo deleted in the meantime are dropped and ``None`` is
        returned. A photo that already holds bytes is left as is and not
        counted twice.
        """

        with self._transaction("store_image") as conn:
            row = conn.execute(
                "SELECT pin_id, image_data IS NOT NULL AS has_image FROM photos WHERE id=?",
                (photo_id,),
            ).fetchone()
            if row is None:
                return None
            if not row["has_image"]:
                conn.execute(
                    "UPDATE photos SET image_data=?, content_type=? WHERE id=?",
                    (sqlite3.Binary(data), content_type, photo_id),
                )
                conn.execute(
                    "UPDATE pins SET number_of_photos = number_of_photos + 1 WHERE id=?",
                    (row["pin_id"],),
                )
        return self.get_photo(photo_id, with_image=True)

    def delete_photo(self, photo_id: str) -> Photo | None:
        with self._transaction("delete_photo") as conn:
            row = conn.execute(
                f"SELECT {_PHOTO_COLUMNS} FROM photos WHERE id=?",
                (photo_id,),
            ).fetchone()
            if row is None:
                return None
            photo = Photo.from_row(row)
            conn.execute("DELETE FROM photos WHERE id=?", (photo_id,))
            if photo.has_image:
                conn.execute(
                    """
                    UPDATE pins
                    SET number_of_photos = MAX(0, number_of_photos - 1)
                    WHERE id=?
                    """,
                    (photo.pin_id,),
                )
        logging.info("PHOTO deleted id=%s pin=%s", photo_id, photo.pin_id)
        return photo

    def delete_photos_for_pin(self, pin_id: str) -> int:
        with self._transaction("delete_photos_for_pin") as conn:
            cursor = conn.execute("DELETE FROM photos WHERE pin_id=?", (pin_id,))
            conn.execute("UPDATE pins SET number_of_photos = 0 WHERE id=?", (pin_id,))
        return max(0, cursor.rowcount)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_setting(self, key: str) -> Any | None:
        row = self.conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        if not row:
            return None
        try:
            return json.loads(row["value"])
        except ValueError:
            logging.warning("Corrupted setting %s ignored", key)
            return None

    def set_setting(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        with self._transaction("set_setting") as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, payload, _utcnow_iso()),
            )

    def get_viewport(self) -> dict[str, float] | None:
        stored = self.get_setting(VIEWPORT_KEY)
        if not isinstance(stored, dict):
            return None
        try:
            return normalize_viewport(stored)
        except ValueError:
            return None

    def set_viewport(self, viewport: Mapping[str, Any]) -> dict[str, float]:
        normalized = normalize_viewport(viewport)
        self.set_setting(VIEWPORT_KEY, normalized)
        return normalized


def normalize_viewport(viewport: Mapping[str, Any]) -> dict[str, float]:
    result: dict[str, float] = {}
    for name in VIEWPORT_FIELDS:
        value = viewport.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"viewport field {name} must be a number")
        result[name] = float(value)
    if result["width"] < 0 or result["height"] < 0:
        raise ValueError("viewport width and height must be non-negative")
    return result


__all__ = [
    "UNKNOWN_DISTANCE_M",
    "PersistenceFailed",
    "Pin",
    "Photo",
    "DataAccess",
    "normalize_viewport",
]
