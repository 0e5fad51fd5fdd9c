"""
kosthub/test_catalog.py

Tests for the published-catalog reader.

Tests verify:
1. Only published properties are read, in catalog order
2. A failing property read is skipped and reported, not fatal
3. Fan-out never exceeds the configured concurrency cap
4. Rooms referencing an unknown type are dropped
5. load_public_property hides drafts
6. Saved properties only ever hold and show published properties
"""

import sqlite3
import threading
import time

import pytest

from kosthub.catalog import (
    list_saved_properties,
    load_catalog,
    load_public_property,
    save_property,
    unsave_property,
)
from kosthub.db import dump_json, init_db
from kosthub.listings import derive_listings, describe_property


# ============================================================================
# Fixtures
# ============================================================================

class FlakyConnection:
    """Connection wrapper that fails room-type reads for chosen properties."""

    def __init__(self, conn, failing_ids=(), on_read=None):
        self._conn = conn
        self._failing_ids = set(failing_ids)
        self._on_read = on_read

    def execute(self, sql, params=()):
        if "FROM room_types" in sql:
            if self._on_read:
                self._on_read()
            if params and params[0] in self._failing_ids:
                raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, params)

    def close(self):
        self._conn.close()


@pytest.fixture
def db_file(tmp_path):
    path = tmp_path / "catalog.db"
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    init_db(conn)

    properties = [
        ("P1", "Kost Melati", 1, "published", "2024-01-01"),
        ("P2", "Kost Mawar", 1, "published", "2024-01-02"),
        ("P3", "Kost Draft", 1, "draft", "2024-01-03"),
        ("P4", "Kost Hidden", 0, "published", "2024-01-04"),
        ("P5", "Kost Anggrek", 1, "published", "2024-01-05"),
    ]
    for pid, name, enabled, status, created in properties:
        conn.execute(
            """
            INSERT INTO properties (id, owner_id, name, city, marketplace_enabled, marketplace_status,
                                    common_amenities, created_at)
            VALUES (?, 'owner-1', ?, 'Yogyakarta', ?, ?, ?, ?)
            """,
            (pid, name, enabled, status, dump_json(["WiFi"]), created),
        )
        conn.execute(
            "INSERT INTO room_types (id, property_id, name, price, room_facilities) VALUES (?, ?, 'Single', 900000, ?)",
            (f"{pid}-single", pid, dump_json(["Bed"])),
        )
        conn.execute(
            "INSERT INTO rooms (id, property_id, name, type, status) VALUES (?, ?, 'A1', 'Single', 'vacant')",
            (f"{pid}-a1", pid),
        )
    conn.commit()
    conn.close()
    return path


def connect(path):
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


# ============================================================================
# Tests
# ============================================================================

def test_load_catalog_reads_only_published_in_order(db_file):
    load = load_catalog(lambda: connect(db_file), max_workers=2)

    assert [c.property.id for c in load.catalogs] == ["P1", "P2", "P5"]
    assert load.partial_failures == []
    assert load.catalogs[0].property.common_amenities == ["WiFi"]
    assert load.catalogs[0].room_types[0].room_facilities == ["Bed"]


def test_failing_property_is_skipped_and_reported(db_file):
    load = load_catalog(lambda: FlakyConnection(connect(db_file), failing_ids={"P2"}))

    assert [c.property.id for c in load.catalogs] == ["P1", "P5"]
    assert [(f.property_id, f.reason) for f in load.partial_failures] == [("P2", "catalog_read_failed")]
    assert {l.property_id for l in derive_listings(load.catalogs)} == {"P1", "P5"}


def test_fan_out_respects_concurrency_cap(db_file):
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def on_read():
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.05)
        with lock:
            state["active"] -= 1

    load = load_catalog(lambda: FlakyConnection(connect(db_file), on_read=on_read), max_workers=2)

    assert len(load.catalogs) == 3
    assert state["peak"] <= 2


def test_orphan_rooms_are_dropped(db_file):
    conn = connect(db_file)
    # foreign keys are off on this raw connection, so the bad row goes in
    conn.execute("INSERT INTO rooms (id, property_id, name, type, status) VALUES ('P1-x', 'P1', 'X', 'Ghost', 'vacant')")
    conn.commit()
    conn.close()

    load = load_catalog(lambda: connect(db_file))
    p1 = load.catalogs[0]

    assert [r.name for r in p1.rooms] == ["A1"]


def test_listing_read_failure_propagates():
    def broken():
        raise sqlite3.OperationalError("unable to open database file")

    with pytest.raises(sqlite3.OperationalError):
        load_catalog(broken)


def test_load_public_property_hides_unpublished(db_file):
    assert load_public_property("P1", lambda: connect(db_file)).property.name == "Kost Melati"
    assert load_public_property("P3", lambda: connect(db_file)) is None
    assert load_public_property("P4", lambda: connect(db_file)) is None
    assert load_public_property("missing", lambda: connect(db_file)) is None


def test_describe_property(db_file):
    detail = describe_property("P5", lambda: connect(db_file))

    assert detail.name == "Kost Anggrek"
    assert [rt.name for rt in detail.room_types] == ["Single"]
    assert detail.room_types[0].available_room_count == 1
    assert describe_property("P3", lambda: connect(db_file)) is None


# ============================================================================
# Saved properties
# ============================================================================

def test_saved_properties_newest_first_and_published_only(db_file):
    conn = connect(db_file)
    try:
        assert save_property(conn, "renter-1", "P1") is True
        assert save_property(conn, "renter-1", "P5") is True
        assert save_property(conn, "renter-1", "P3") is False
        assert save_property(conn, "renter-1", "P4") is False
        conn.execute("UPDATE saved_properties SET saved_at = '2024-02-01 00:00:00' WHERE property_id = 'P1'")
        conn.execute("UPDATE saved_properties SET saved_at = '2024-03-01 00:00:00' WHERE property_id = 'P5'")
        conn.commit()

        saved = list_saved_properties(conn, "renter-1")

        assert [s["property_id"] for s in saved] == ["P5", "P1"]
        assert saved[0]["name"] == "Kost Anggrek"
        assert saved[0]["lowest_price"] == 900000
        assert list_saved_properties(conn, "renter-2") == []
    finally:
        conn.close()


def test_saved_property_reappears_when_republished(db_file):
    conn = connect(db_file)
    try:
        save_property(conn, "renter-1", "P2")
        conn.execute("UPDATE properties SET marketplace_status = 'draft' WHERE id = 'P2'")
        assert list_saved_properties(conn, "renter-1") == []

        conn.execute("UPDATE properties SET marketplace_status = 'published' WHERE id = 'P2'")
        assert [s["property_id"] for s in list_saved_properties(conn, "renter-1")] == ["P2"]

        assert unsave_property(conn, "renter-1", "P2") is True
        assert unsave_property(conn, "renter-1", "P2") is False
    finally:
        conn.close()
