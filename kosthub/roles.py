"""
kosthub/roles.py

Role Source Aggregator: the ONLY producer of an effective Role.

Two sources of truth exist for a user's role:
- the back-office staff registry (authoritative for privileged roles)
- the role claim embedded in the generic user profile (unverified)

Resolution rules:
1. A staff record, if present, wins. Its role must be one of the Role enum
   values; anything else is a data-integrity error, never coerced.
2. Without a staff record, the profile claim is honoured only when it is
   "admin" or "tenant". Absent or unrecognized claims default to tenant.
   A profile can never grant superadmin.

The asymmetry is intentional and must not be collapsed: staff data is
curated by operators, profile data is user-editable. Operators write the
staff registry through assign_staff_role / revoke_staff_role, which only
ever store Role values.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from kosthub.config import IS_DEV
from kosthub.errors import RoleDataIntegrityError
from kosthub.models import Profile, Role, StaffRecord


# Roles a non-staff profile may claim for itself.
PROFILE_CLAIMABLE_ROLES = frozenset({Role.admin, Role.tenant})

DEFAULT_ROLE = Role.tenant


# ============================================================================
# Store lookups (absence is not an error)
# ============================================================================

def get_staff_record(conn: sqlite3.Connection, user_id: str) -> Optional[StaffRecord]:
    """Return the staff registry record for user_id, or None."""
    row = conn.execute(
        "SELECT user_id, role, name, email FROM backoffice_users WHERE user_id = ? LIMIT 1",
        (user_id,),
    ).fetchone()
    if not row:
        return None
    return StaffRecord(
        user_id=row["user_id"],
        role=row["role"],
        name=row["name"],
        email=row["email"],
    )


def get_profile(conn: sqlite3.Connection, user_id: str) -> Optional[Profile]:
    """Return the generic profile for user_id, or None."""
    row = conn.execute(
        "SELECT user_id, role, name, phone, gender FROM profiles WHERE user_id = ? LIMIT 1",
        (user_id,),
    ).fetchone()
    if not row:
        return None
    return Profile(
        user_id=row["user_id"],
        role=row["role"],
        name=row["name"],
        phone=row["phone"],
        gender=row["gender"],
    )


# ============================================================================
# Normalization
# ============================================================================

def normalize_staff_role(user_id: str, raw_role: Optional[str]) -> Role:
    """
    Map a staff registry role string onto Role.

    Raises:
        RoleDataIntegrityError: if the value is not a Role member
    """
    try:
        return Role(raw_role)
    except ValueError:
        print(f"[ROLES] Integrity error: user_id={user_id}, staff_role={raw_role!r}")
        raise RoleDataIntegrityError(user_id, raw_role)


def normalize_profile_claim(raw_claim: Optional[str]) -> Role:
    """Map an unverified profile claim onto Role, defaulting to tenant."""
    if not raw_claim:
        return DEFAULT_ROLE
    try:
        claimed = Role(raw_claim)
    except ValueError:
        return DEFAULT_ROLE
    if claimed not in PROFILE_CLAIMABLE_ROLES:
        return DEFAULT_ROLE
    return claimed


def aggregate_role(
    user_id: str,
    staff_record: Optional[StaffRecord],
    profile: Optional[Profile],
) -> Role:
    """
    Combine both sources into the effective role.

    Pure function: no store access. The staff record strictly overrides
    the profile claim.
    """
    if staff_record is not None:
        return normalize_staff_role(user_id, staff_record.role)
    return normalize_profile_claim(profile.role if profile else None)


def resolve_role(conn: sqlite3.Connection, user_id: str) -> Role:
    """
    Resolve the effective role for user_id from the stores.

    Raises:
        RoleDataIntegrityError: staff record has an unrecognized role
    """
    role, _ = resolve_role_with_source(conn, user_id)
    return role


def resolve_role_with_source(conn: sqlite3.Connection, user_id: str) -> tuple[Role, bool]:
    """Resolve the effective role and report whether it came from the staff registry."""
    staff_record = get_staff_record(conn, user_id)
    profile = None if staff_record is not None else get_profile(conn, user_id)

    role = aggregate_role(user_id, staff_record, profile)

    if IS_DEV:
        source = "staff_registry" if staff_record is not None else "profile_claim"
        print(f"[ROLES] Resolved: user_id={user_id}, role={role.value}, source={source}")

    return role, staff_record is not None


# ============================================================================
# Staff registry writes (back office)
# ============================================================================

def list_staff(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    """Every staff record with the account email. Roles are returned raw."""
    rows = conn.execute(
        """
        SELECT b.user_id, COALESCE(b.email, u.email) AS email, b.name, b.role
        FROM backoffice_users b
        LEFT JOIN users u ON u.id = b.user_id
        ORDER BY email, b.user_id
        """
    ).fetchall()
    return [dict(row) for row in rows]


def assign_staff_role(
    conn: sqlite3.Connection,
    user_id: str,
    role: Role,
    name: Optional[str] = None,
) -> Optional[StaffRecord]:
    """
    Create or replace the staff record for an existing account.

    Only Role members are written, so the registry never gains a value the
    aggregator would reject. Returns None when the account does not exist.
    """
    user = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()
    if not user:
        return None

    conn.execute(
        """
        INSERT INTO backoffice_users (user_id, role, name, email) VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            role = excluded.role,
            name = COALESCE(excluded.name, backoffice_users.name),
            email = excluded.email
        """,
        (user_id, Role(role).value, name, user["email"]),
    )
    conn.commit()
    print(f"[ROLES] Staff role assigned: user_id={user_id}, role={Role(role).value}")
    return get_staff_record(conn, user_id)


def revoke_staff_role(conn: sqlite3.Connection, user_id: str) -> bool:
    """Drop the staff record; the profile claim applies again. False if none existed."""
    cur = conn.execute("DELETE FROM backoffice_users WHERE user_id = ?", (user_id,))
    conn.commit()
    revoked = cur.rowcount > 0
    if revoked:
        print(f"[ROLES] Staff role revoked: user_id={user_id}")
    return revoked
