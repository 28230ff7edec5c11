"""Migration 0001: pins and their photo albums."""

from __future__ import annotations

import sqlite3


def run(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pins (
            id TEXT PRIMARY KEY,
            latitude REAL NOT NULL,
            longitude REAL NOT NULL,
            title TEXT NOT NULL,
            subtitle TEXT NOT NULL,
            is_new INTEGER NOT NULL DEFAULT 1,
            radius_index INTEGER NOT NULL DEFAULT 0,
            current_page INTEGER NOT NULL DEFAULT 1,
            number_of_pages INTEGER NOT NULL DEFAULT 1,
            number_of_photos INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS photos (
            id TEXT PRIMARY KEY,
            pin_id TEXT NOT NULL REFERENCES pins(id) ON DELETE CASCADE,
            remote_id TEXT NOT NULL,
            title TEXT,
            url TEXT NOT NULL,
            distance_m REAL NOT NULL,
            content_type TEXT,
            image_data BLOB,
            created_at TEXT NOT NULL,
            UNIQUE (pin_id, remote_id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_photos_pin ON photos(pin_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_photos_pin_distance ON photos(pin_id, distance_m)"
    )
