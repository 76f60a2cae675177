"""
SQLite database helpers for the dispatch service.
"""

from pathlib import Path
from datetime import datetime, timezone

import aiosqlite

from config import DB_PATH

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    email               TEXT    NOT NULL UNIQUE COLLATE NOCASE,
    password_hash       TEXT    NOT NULL,
    display_name        TEXT    DEFAULT '',
    phone               TEXT    DEFAULT '',
    role                TEXT    NOT NULL DEFAULT 'customer',
    is_active           INTEGER NOT NULL DEFAULT 1,
    is_available        INTEGER NOT NULL DEFAULT 0,
    lat                 REAL,
    lng                 REAL,
    address             TEXT    DEFAULT '',
    location_updated_at TEXT,
    created_at          TEXT    NOT NULL,
    last_login_at       TEXT
);

CREATE INDEX IF NOT EXISTS idx_users_role_active
ON users(role, is_active, is_available);

CREATE INDEX IF NOT EXISTS idx_users_location
ON users(lat, lng);

CREATE TABLE IF NOT EXISTS service_requests (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    customer_id         INTEGER NOT NULL,
    mechanic_id         INTEGER,
    is_direct_booking   INTEGER NOT NULL DEFAULT 0,
    issue_type          TEXT    NOT NULL,
    description         TEXT    NOT NULL,
    vehicle_type        TEXT    NOT NULL,
    vehicle_make        TEXT    DEFAULT '',
    vehicle_model       TEXT    NOT NULL,
    vehicle_plate       TEXT    NOT NULL,
    vehicle_year        INTEGER,
    images              TEXT    NOT NULL DEFAULT '[]',
    lat                 REAL    NOT NULL,
    lng                 REAL    NOT NULL,
    address             TEXT    DEFAULT '',
    broadcast_radius_km REAL    NOT NULL DEFAULT 10,
    priority            TEXT    NOT NULL DEFAULT 'medium',
    status              TEXT    NOT NULL DEFAULT 'pending',
    quotation           REAL,
    estimated_duration  INTEGER,
    final_amount        REAL,
    actual_duration     INTEGER,
    cancellation_reason TEXT,
    version             INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT    NOT NULL,
    updated_at          TEXT    NOT NULL,
    accepted_at         TEXT,
    started_at          TEXT,
    completed_at        TEXT,
    cancelled_at        TEXT,
    FOREIGN KEY (customer_id) REFERENCES users(id),
    FOREIGN KEY (mechanic_id) REFERENCES users(id)
);

CREATE INDEX IF NOT EXISTS idx_requests_customer_status
ON service_requests(customer_id, status);

CREATE INDEX IF NOT EXISTS idx_requests_mechanic_status
ON service_requests(mechanic_id, status);

CREATE INDEX IF NOT EXISTS idx_requests_status_created
ON service_requests(status, created_at);

CREATE TABLE IF NOT EXISTS request_history (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id INTEGER NOT NULL,
    status     TEXT    NOT NULL,
    actor_id   INTEGER,
    note       TEXT    DEFAULT '',
    created_at TEXT    NOT NULL,
    FOREIGN KEY (request_id) REFERENCES service_requests(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_history_request
ON request_history(request_id, id);

CREATE TABLE IF NOT EXISTS request_notes (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id INTEGER NOT NULL,
    text       TEXT    NOT NULL,
    added_by   INTEGER NOT NULL,
    created_at TEXT    NOT NULL,
    FOREIGN KEY (request_id) REFERENCES service_requests(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_notes_request
ON request_notes(request_id, id);

CREATE TABLE IF NOT EXISTS request_candidates (
    request_id  INTEGER NOT NULL,
    mechanic_id INTEGER NOT NULL,
    distance_km REAL    NOT NULL,
    notified_at TEXT    NOT NULL,
    PRIMARY KEY (request_id, mechanic_id),
    FOREIGN KEY (request_id) REFERENCES service_requests(id) ON DELETE CASCADE,
    FOREIGN KEY (mechanic_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_candidates_mechanic
ON request_candidates(mechanic_id);
"""


async def get_db() -> aiosqlite.Connection:
    """
    Open a configured SQLite connection.
    """
    db = await aiosqlite.connect(Path(DB_PATH))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute("PRAGMA journal_mode = WAL")
    await db.execute("PRAGMA synchronous = NORMAL")
    await db.execute("PRAGMA cache_size = -8000")
    await db.execute("PRAGMA busy_timeout = 5000")
    return db


async def init_db() -> None:
    """
    Initialize database schema at application startup.
    """
    db = await get_db()
    try:
        await db.executescript(SCHEMA_SQL)
        await db.commit()
    finally:
        await db.close()


def utc_now_iso() -> str:
    """
    Return current UTC timestamp as ISO 8601.
    """
    return datetime.now(timezone.utc).isoformat()
