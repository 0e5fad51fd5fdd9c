# kosthub/db.py
# SQLite persistence helpers: connections, schema bootstrap, row/JSON conversion

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path as FsPath
from typing import Any, Dict, Generator, List, Optional

from kosthub import config


def db_path() -> str:
    """
    Resolve the SQLite file path.

    Relative paths are anchored next to this package so the server and the
    CLI agree regardless of the working directory. Read at call time so tests
    can point config.DATABASE_PATH at a temp file.
    """
    raw = config.DATABASE_PATH
    if raw == ":memory:" or FsPath(raw).is_absolute():
        return raw
    return str(FsPath(__file__).resolve().parent / raw)


def get_db() -> sqlite3.Connection:
    """
    Create and return a SQLite connection with Row factory.
    Caller owns the connection and must close it.
    """
    conn = sqlite3.connect(db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """Context manager for a single unit of work."""
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------
# Row Conversion Helpers
# ---------------------------------------------------------

def json_list(value: Any) -> List[str]:
    """Decode a JSON array column; anything malformed becomes []."""
    if not value:
        return []
    if isinstance(value, list):
        return value
    try:
        decoded = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return []
    return decoded if isinstance(decoded, list) else []


def json_object(value: Any) -> Dict[str, Any]:
    """Decode a JSON object column; anything malformed becomes {}."""
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    try:
        decoded = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def dump_json(value: Optional[Any]) -> str:
    return json.dumps(value if value is not None else [])


# ---------------------------------------------------------
# Schema
# ---------------------------------------------------------
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        is_active INTEGER DEFAULT 1,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id TEXT PRIMARY KEY,
        role TEXT,
        name TEXT,
        phone TEXT,
        gender TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backoffice_users (
        user_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        name TEXT,
        email TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        refresh_token_hash TEXT NOT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        revoked_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription_plans (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        price REAL DEFAULT 0,
        max_properties INTEGER DEFAULT 1,
        max_rooms_per_property INTEGER DEFAULT 10,
        features TEXT DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        plan_id TEXT NOT NULL REFERENCES subscription_plans(id),
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'cancelled', 'expired')),
        start_date TEXT,
        end_date TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS properties (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        address TEXT DEFAULT '',
        city TEXT DEFAULT '',
        description TEXT,
        phone TEXT,
        email TEXT,
        marketplace_enabled INTEGER DEFAULT 0,
        marketplace_status TEXT DEFAULT 'draft'
            CHECK (marketplace_status IN ('draft', 'published')),
        common_amenities TEXT DEFAULT '[]',
        parking_amenities TEXT DEFAULT '[]',
        rules TEXT DEFAULT '[]',
        photos TEXT DEFAULT '[]',
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_types (
        id TEXT PRIMARY KEY,
        property_id TEXT NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        price REAL DEFAULT 0,
        daily_price REAL,
        weekly_price REAL,
        yearly_price REAL,
        enable_daily_price INTEGER DEFAULT 0,
        enable_weekly_price INTEGER DEFAULT 0,
        enable_yearly_price INTEGER DEFAULT 0,
        description TEXT,
        room_facilities TEXT DEFAULT '[]',
        bathroom_facilities TEXT DEFAULT '[]',
        photos TEXT DEFAULT '[]',
        max_occupancy INTEGER DEFAULT 1 CHECK (max_occupancy BETWEEN 1 AND 5),
        renter_gender TEXT NOT NULL DEFAULT 'any'
            CHECK (renter_gender IN ('male', 'female', 'any')),
        UNIQUE (property_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id TEXT PRIMARY KEY,
        property_id TEXT NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'vacant'
            CHECK (status IN ('vacant', 'occupied', 'maintenance')),
        FOREIGN KEY (property_id, type) REFERENCES room_types(property_id, name)
            ON DELETE RESTRICT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS saved_properties (
        user_id TEXT NOT NULL,
        property_id TEXT NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
        saved_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (user_id, property_id)
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_properties_marketplace ON properties(marketplace_enabled, marketplace_status)",
    "CREATE INDEX IF NOT EXISTS idx_room_types_property_id ON room_types(property_id)",
    "CREATE INDEX IF NOT EXISTS idx_rooms_property_id ON rooms(property_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status ON subscriptions(user_id, status)",
]


def init_db(conn: Optional[sqlite3.Connection] = None) -> None:
    """Create all tables and indexes. Idempotent."""
    owns_conn = conn is None
    if owns_conn:
        conn = get_db()
    try:
        cur = conn.cursor()
        for ddl in SCHEMA:
            cur.execute(ddl)
        for ddl in INDEXES:
            cur.execute(ddl)
        conn.commit()
        if config.IS_DEV:
            print(f"[DB] Schema ensured ({len(SCHEMA)} tables)")
    finally:
        if owns_conn:
            conn.close()
