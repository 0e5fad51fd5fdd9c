# kosthub/seed.py
# Demo data for local development (idempotent)
# Run: python -m kosthub.seed

import sqlite3
from datetime import datetime, timezone

from kosthub.db import dump_json, get_db_connection, init_db
from kosthub.entitlements import validate_feature_map
from kosthub.session import hash_password

DEMO_PASSWORD = "kosthub123"

PLANS = [
    {
        "id": "plan-basic",
        "name": "Basic",
        "description": "Single property, manual billing",
        "price": 99000,
        "max_properties": 1,
        "max_rooms_per_property": 10,
        "features": {
            "tenant_data": True,
            "auto_billing": False,
            "billing_notifications": False,
            "multi_user": False,
            "analytics": False,
            "marketplace_listing": False,
            "financial_reports": "basic",
            "data_backup": "none",
            "support": "basic",
        },
    },
    {
        "id": "plan-pro",
        "name": "Pro",
        "description": "Marketplace listing and automated billing",
        "price": 249000,
        "max_properties": 5,
        "max_rooms_per_property": 50,
        "features": {
            "tenant_data": True,
            "auto_billing": True,
            "billing_notifications": True,
            "multi_user": True,
            "analytics": True,
            "marketplace_listing": True,
            "financial_reports": "advanced",
            "data_backup": "weekly",
            "support": "priority",
        },
    },
]

# (id, email, staff role or None, profile role claim)
USERS = [
    ("user-ops", "ops@kosthub.id", "superadmin", None),
    ("user-owner", "owner@kosthub.id", None, "admin"),
    ("user-renter", "renter@kosthub.id", None, "tenant"),
]


def seed_users(conn: sqlite3.Connection) -> None:
    for user_id, email, staff_role, claim in USERS:
        conn.execute(
            "INSERT OR IGNORE INTO users (id, email, password_hash) VALUES (?, ?, ?)",
            (user_id, email, hash_password(DEMO_PASSWORD)),
        )
        conn.execute(
            "INSERT OR IGNORE INTO profiles (user_id, role, name) VALUES (?, ?, ?)",
            (user_id, claim, email.split("@")[0]),
        )
        if staff_role:
            conn.execute(
                "INSERT OR IGNORE INTO backoffice_users (user_id, role, name, email) VALUES (?, ?, ?, ?)",
                (user_id, staff_role, email.split("@")[0], email),
            )


def seed_plans(conn: sqlite3.Connection) -> None:
    for plan in PLANS:
        conn.execute(
            """
            INSERT OR IGNORE INTO subscription_plans
                (id, name, description, price, max_properties, max_rooms_per_property, features)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (plan["id"], plan["name"], plan["description"], plan["price"],
             plan["max_properties"], plan["max_rooms_per_property"],
             dump_json(validate_feature_map(plan["features"]))),
        )
    conn.execute(
        """
        INSERT OR IGNORE INTO subscriptions (id, user_id, plan_id, status, start_date)
        VALUES ('sub-owner', 'user-owner', 'plan-pro', 'active', ?)
        """,
        (datetime.now(timezone.utc).isoformat(),),
    )


def seed_catalog(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO properties
            (id, owner_id, name, address, city, description, phone,
             marketplace_enabled, marketplace_status, common_amenities, rules)
        VALUES ('prop-melati', 'user-owner', 'Kost Melati', 'Jl. Kaliurang KM 5', 'Yogyakarta',
                'Quiet kost near campus', '0812-0000-0000', 1, 'published', ?, ?)
        """,
        (dump_json(["WiFi", "Kitchen", "Laundry"]), dump_json(["No smoking", "Gate closes 23:00"])),
    )
    room_types = [
        ("rt-single", "Single", 900000, ["Bed", "Desk"], ["Shared bathroom"], 1, "female"),
        ("rt-deluxe", "Deluxe", 1500000, ["Bed", "Desk", "AC"], ["Private bathroom", "Water heater"], 2, "any"),
    ]
    for rt_id, name, price, room_facilities, bathroom_facilities, occupancy, gender in room_types:
        conn.execute(
            """
            INSERT OR IGNORE INTO room_types
                (id, property_id, name, price, room_facilities, bathroom_facilities,
                 max_occupancy, renter_gender)
            VALUES (?, 'prop-melati', ?, ?, ?, ?, ?, ?)
            """,
            (rt_id, name, price, dump_json(room_facilities), dump_json(bathroom_facilities),
             occupancy, gender),
        )
    rooms = [
        ("room-a1", "A1", "Single", "vacant"),
        ("room-a2", "A2", "Single", "occupied"),
        ("room-b1", "B1", "Deluxe", "vacant"),
    ]
    for room_id, name, room_type, status in rooms:
        conn.execute(
            "INSERT OR IGNORE INTO rooms (id, property_id, name, type, status) VALUES (?, 'prop-melati', ?, ?, ?)",
            (room_id, name, room_type, status),
        )


def run_seed() -> None:
    print("[SEED] Seeding demo data...")
    init_db()
    with get_db_connection() as conn:
        seed_users(conn)
        seed_plans(conn)
        seed_catalog(conn)
        conn.commit()
    print(f"[SEED] Done. Demo users share the password {DEMO_PASSWORD!r}")


if __name__ == "__main__":
    run_seed()
