"""
kosthub/catalog.py

Read side of the property -> room type -> room catalog.

Only properties that are published to the marketplace are read here.
Each property gets one combined read (room types + rooms) on its own
connection; reads fan out through a thread pool capped at
CATALOG_READ_CONCURRENCY so a large catalog never opens an unbounded
number of simultaneous reads.

A failing property read is skipped and reported in partial_failures.
The rest of the catalog is still returned.

Renters' saved properties live here too; they are filtered on the same
published predicate when read back.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from kosthub import config
from kosthub.db import get_db, json_list
from kosthub.errors import CatalogReadFailed
from kosthub.models import Property, PropertyCatalog, Room, RoomType


ConnFactory = Callable[[], sqlite3.Connection]

PUBLISHED_PREDICATE = "marketplace_enabled = 1 AND marketplace_status = 'published'"


@dataclass
class PartialFailure:
    property_id: str
    reason: str


@dataclass
class CatalogLoad:
    catalogs: List[PropertyCatalog] = field(default_factory=list)
    partial_failures: List[PartialFailure] = field(default_factory=list)


# ---------------------------------------------------------
# Row mapping
# ---------------------------------------------------------
def row_to_property(row: sqlite3.Row) -> Property:
    return Property(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        address=row["address"] or "",
        city=row["city"] or "",
        description=row["description"],
        phone=row["phone"],
        email=row["email"],
        marketplace_enabled=bool(row["marketplace_enabled"]),
        marketplace_status=row["marketplace_status"] or "draft",
        common_amenities=json_list(row["common_amenities"]),
        parking_amenities=json_list(row["parking_amenities"]),
        rules=json_list(row["rules"]),
        photos=json_list(row["photos"]),
    )


def row_to_room_type(row: sqlite3.Row) -> RoomType:
    return RoomType(
        id=row["id"],
        property_id=row["property_id"],
        name=row["name"],
        price=row["price"] or 0.0,
        daily_price=row["daily_price"],
        weekly_price=row["weekly_price"],
        yearly_price=row["yearly_price"],
        enable_daily_price=bool(row["enable_daily_price"]),
        enable_weekly_price=bool(row["enable_weekly_price"]),
        enable_yearly_price=bool(row["enable_yearly_price"]),
        description=row["description"],
        room_facilities=json_list(row["room_facilities"]),
        bathroom_facilities=json_list(row["bathroom_facilities"]),
        photos=json_list(row["photos"]),
        max_occupancy=row["max_occupancy"] or 1,
        renter_gender=row["renter_gender"] or "any",
    )


def row_to_room(row: sqlite3.Row) -> Room:
    return Room(
        id=row["id"],
        property_id=row["property_id"],
        name=row["name"],
        type=row["type"],
        status=row["status"],
    )


# ---------------------------------------------------------
# Reads
# ---------------------------------------------------------
def list_published_properties(conn: sqlite3.Connection) -> List[Property]:
    """Published properties in catalog order (oldest first)."""
    rows = conn.execute(
        f"""
        SELECT * FROM properties
        WHERE {PUBLISHED_PREDICATE}
        ORDER BY created_at, id
        """
    ).fetchall()
    return [row_to_property(row) for row in rows]


def get_property(conn: sqlite3.Connection, property_id: str) -> Optional[Property]:
    row = conn.execute("SELECT * FROM properties WHERE id = ?", (property_id,)).fetchone()
    return row_to_property(row) if row else None


def list_owner_properties(conn: sqlite3.Connection, owner_id: str) -> List[Property]:
    rows = conn.execute(
        "SELECT * FROM properties WHERE owner_id = ? ORDER BY created_at, id",
        (owner_id,),
    ).fetchall()
    return [row_to_property(row) for row in rows]


def read_property_catalog(conn: sqlite3.Connection, prop: Property) -> PropertyCatalog:
    """
    Combined read of one property's room types and rooms.

    Raises:
        CatalogReadFailed: store error or a malformed row
    """
    try:
        type_rows = conn.execute(
            "SELECT * FROM room_types WHERE property_id = ? ORDER BY price, name",
            (prop.id,),
        ).fetchall()
        room_rows = conn.execute(
            "SELECT id, property_id, name, type, status FROM rooms WHERE property_id = ? ORDER BY name",
            (prop.id,),
        ).fetchall()
        catalog = PropertyCatalog(
            property=prop,
            room_types=[row_to_room_type(row) for row in type_rows],
            rooms=[row_to_room(row) for row in room_rows],
        )
    except (sqlite3.Error, ValidationError) as e:
        raise CatalogReadFailed(prop.id, e) from e

    orphans = catalog.orphan_rooms()
    if orphans:
        print(f"[CATALOG] Skipping {len(orphans)} room(s) with unknown type: property_id={prop.id}")
        known = {rt.name for rt in catalog.room_types}
        catalog = PropertyCatalog(
            property=prop,
            room_types=catalog.room_types,
            rooms=[room for room in catalog.rooms if room.type in known],
        )
    return catalog


def _read_with_own_connection(conn_factory: ConnFactory, prop: Property) -> PropertyCatalog:
    try:
        conn = conn_factory()
    except sqlite3.Error as e:
        raise CatalogReadFailed(prop.id, e) from e
    try:
        return read_property_catalog(conn, prop)
    finally:
        conn.close()


def load_catalog(
    conn_factory: ConnFactory = get_db,
    max_workers: Optional[int] = None,
) -> CatalogLoad:
    """
    Read the whole published catalog.

    Property order is preserved. Per-property failures are collected in
    partial_failures; a failure to list the properties themselves propagates.
    """
    workers = max(1, max_workers or config.CATALOG_READ_CONCURRENCY)

    conn = conn_factory()
    try:
        properties = list_published_properties(conn)
    finally:
        conn.close()

    result = CatalogLoad()
    if not properties:
        return result

    with ThreadPoolExecutor(max_workers=min(workers, len(properties)),
                            thread_name_prefix="catalog-read") as executor:
        futures = [executor.submit(_read_with_own_connection, conn_factory, prop) for prop in properties]
        for prop, future in zip(properties, futures):
            try:
                result.catalogs.append(future.result())
            except CatalogReadFailed as e:
                print(f"[CATALOG] Read failed, property skipped: property_id={e.property_id}, "
                      f"cause={type(e.cause).__name__}")
                result.partial_failures.append(
                    PartialFailure(property_id=prop.id, reason="catalog_read_failed")
                )

    if config.IS_DEV:
        print(f"[CATALOG] Loaded {len(result.catalogs)} published properties "
              f"({len(result.partial_failures)} skipped, workers={workers})")
    return result


def load_public_property(property_id: str, conn_factory: ConnFactory = get_db) -> Optional[PropertyCatalog]:
    """
    One published property with its room types and rooms.

    Returns None when the property does not exist or is not published, so
    draft properties are indistinguishable from missing ones.
    """
    conn = conn_factory()
    try:
        prop = get_property(conn, property_id)
        if prop is None or not prop.is_public:
            return None
        return read_property_catalog(conn, prop)
    finally:
        conn.close()


# ---------------------------------------------------------
# Saved properties (renters)
# ---------------------------------------------------------
def list_saved_properties(conn: sqlite3.Connection, user_id: str) -> List[Dict[str, Any]]:
    """
    The renter's saved properties that are still published, newest first.

    A saved property that was later unpublished stays saved but is hidden
    until it is published again.
    """
    rows = conn.execute(
        """
        SELECT p.*, s.saved_at,
               (SELECT MIN(rt.price) FROM room_types rt WHERE rt.property_id = p.id) AS lowest_price
        FROM saved_properties s
        JOIN properties p ON p.id = s.property_id
        WHERE s.user_id = ?
          AND p.marketplace_enabled = 1 AND p.marketplace_status = 'published'
        ORDER BY s.saved_at DESC, p.name
        """,
        (user_id,),
    ).fetchall()
    saved = []
    for row in rows:
        prop = row_to_property(row)
        saved.append({
            "property_id": prop.id,
            "name": prop.name,
            "address": prop.address,
            "city": prop.city,
            "photo": prop.photos[0] if prop.photos else None,
            "lowest_price": row["lowest_price"],
            "saved_at": row["saved_at"],
        })
    return saved


def save_property(conn: sqlite3.Connection, user_id: str, property_id: str) -> bool:
    """Save a published property. False when it is missing or not public. Idempotent."""
    prop = get_property(conn, property_id)
    if prop is None or not prop.is_public:
        return False
    conn.execute(
        "INSERT OR IGNORE INTO saved_properties (user_id, property_id) VALUES (?, ?)",
        (user_id, property_id),
    )
    conn.commit()
    return True


def unsave_property(conn: sqlite3.Connection, user_id: str, property_id: str) -> bool:
    cur = conn.execute(
        "DELETE FROM saved_properties WHERE user_id = ? AND property_id = ?",
        (user_id, property_id),
    )
    conn.commit()
    return cur.rowcount > 0
