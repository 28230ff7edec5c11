from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from main import apply_migrations, open_database


def _table_names(conn: sqlite3.Connection) -> set[str]:
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    )
    return {row[0] for row in cur.fetchall()}


def _index_names(conn: sqlite3.Connection, table: str) -> set[str]:
    quoted = table.replace("'", "''")
    cur = conn.execute(f"PRAGMA index_list('{quoted}')")
    return {row[1] for row in cur.fetchall()}


def test_apply_migrations_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    expected_tables = {"pins", "photos", "settings", "schema_migrations"}

    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        apply_migrations(conn)
        assert expected_tables.issubset(_table_names(conn))
        photo_indexes = _index_names(conn, "photos")
        assert "idx_photos_pin" in photo_indexes
        assert "idx_photos_pin_distance" in photo_indexes
        applied = {row["id"] for row in conn.execute("SELECT id FROM schema_migrations")}
        assert applied == {"0001_pins_photos", "0002_settings"}

    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        apply_migrations(conn)
        assert expected_tables.issubset(_table_names(conn))
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 2


def test_open_database_creates_parent_directory(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "pins.db"

    conn = open_database(str(db_path))
    try:
        assert db_path.exists()
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        pin_columns = {row["name"] for row in conn.execute("PRAGMA table_info(pins)")}
        assert {"is_new", "radius_index", "current_page", "number_of_pages", "number_of_photos"} <= pin_columns
    finally:
        conn.close()
