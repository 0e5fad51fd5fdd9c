"""
kosthub/test_roles.py

Tests for the Role Source Aggregator.

Tests verify:
1. A staff record wins regardless of the profile claim
2. Without a staff record, admin/tenant claims are honoured, anything else is tenant
3. A profile can never grant superadmin
4. Unrecognized staff roles raise RoleDataIntegrityError (never coerced)
5. Registry writes only store known roles and only for existing accounts
"""

import sqlite3

import pytest

from kosthub.db import init_db
from kosthub.errors import RoleDataIntegrityError
from kosthub.models import Profile, Role, StaffRecord
from kosthub.roles import (
    aggregate_role,
    assign_staff_role,
    list_staff,
    normalize_profile_claim,
    resolve_role,
    resolve_role_with_source,
    revoke_staff_role,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_db():
    """In-memory database with the full schema."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    init_db(conn)
    yield conn
    conn.close()


def add_profile(conn, user_id, role):
    conn.execute("INSERT INTO profiles (user_id, role) VALUES (?, ?)", (user_id, role))
    conn.commit()


def add_staff(conn, user_id, role):
    conn.execute("INSERT INTO backoffice_users (user_id, role) VALUES (?, ?)", (user_id, role))
    conn.commit()


# ============================================================================
# Pure aggregation
# ============================================================================

@pytest.mark.parametrize("staff_role", ["superadmin", "admin", "tenant"])
@pytest.mark.parametrize("claim", [None, "", "tenant", "admin", "superadmin", "landlord"])
def test_staff_role_wins_over_any_claim(staff_role, claim):
    staff = StaffRecord(user_id="u1", role=staff_role)
    profile = Profile(user_id="u1", role=claim)

    assert aggregate_role("u1", staff, profile) == Role(staff_role)


@pytest.mark.parametrize("claim,expected", [
    ("admin", Role.admin),
    ("tenant", Role.tenant),
    (None, Role.tenant),
    ("", Role.tenant),
    ("owner", Role.tenant),
    ("ADMIN", Role.tenant),
    ("superadmin", Role.tenant),
])
def test_non_staff_role_follows_claim_or_defaults_to_tenant(claim, expected):
    assert aggregate_role("u1", None, Profile(user_id="u1", role=claim)) == expected


def test_no_records_at_all_is_tenant():
    assert aggregate_role("u1", None, None) == Role.tenant


def test_profile_cannot_claim_superadmin():
    assert normalize_profile_claim("superadmin") == Role.tenant


@pytest.mark.parametrize("bad_role", ["owner", "SUPERADMIN", "", None])
def test_unrecognized_staff_role_is_integrity_error(bad_role):
    staff = StaffRecord(user_id="u1", role=bad_role)

    with pytest.raises(RoleDataIntegrityError) as exc:
        aggregate_role("u1", staff, Profile(user_id="u1", role="admin"))

    assert exc.value.user_id == "u1"
    assert exc.value.raw_role == bad_role


# ============================================================================
# Store-backed resolution
# ============================================================================

def test_resolve_role_prefers_staff_registry(test_db):
    add_staff(test_db, "u1", "admin")
    add_profile(test_db, "u1", "tenant")

    assert resolve_role(test_db, "u1") == Role.admin
    assert resolve_role_with_source(test_db, "u1") == (Role.admin, True)


def test_resolve_role_uses_profile_claim_without_staff_record(test_db):
    add_profile(test_db, "u2", "admin")

    assert resolve_role_with_source(test_db, "u2") == (Role.admin, False)


def test_resolve_role_missing_user_defaults_to_tenant(test_db):
    assert resolve_role(test_db, "nobody") == Role.tenant


def test_resolve_role_corrupt_staff_row_raises(test_db):
    add_staff(test_db, "u3", "root")
    add_profile(test_db, "u3", "admin")

    with pytest.raises(RoleDataIntegrityError):
        resolve_role(test_db, "u3")


# ============================================================================
# Registry writes
# ============================================================================

def add_user(conn, user_id, email):
    conn.execute("INSERT INTO users (id, email, password_hash) VALUES (?, ?, 'x')", (user_id, email))
    conn.commit()


def test_assign_staff_role_overrides_claim_until_revoked(test_db):
    add_user(test_db, "u4", "u4@kosthub.id")
    add_profile(test_db, "u4", "tenant")

    record = assign_staff_role(test_db, "u4", Role.admin, "Budi")

    assert record.role == "admin"
    assert record.email == "u4@kosthub.id"
    assert resolve_role_with_source(test_db, "u4") == (Role.admin, True)

    assert revoke_staff_role(test_db, "u4") is True
    assert revoke_staff_role(test_db, "u4") is False
    assert resolve_role_with_source(test_db, "u4") == (Role.tenant, False)


def test_reassign_replaces_corrupt_role_and_keeps_name(test_db):
    add_user(test_db, "u5", "u5@kosthub.id")
    add_staff(test_db, "u5", "root")

    assign_staff_role(test_db, "u5", Role.superadmin, "Sari")
    record = assign_staff_role(test_db, "u5", Role.admin)

    assert record.name == "Sari"
    assert resolve_role(test_db, "u5") == Role.admin


def test_assign_staff_role_requires_account(test_db):
    assert assign_staff_role(test_db, "ghost", Role.admin) is None
    assert list_staff(test_db) == []


@pytest.mark.parametrize("bad_role", ["root", "owner", ""])
def test_assign_staff_role_rejects_unknown_roles(test_db, bad_role):
    add_user(test_db, "u6", "u6@kosthub.id")

    with pytest.raises(ValueError):
        assign_staff_role(test_db, "u6", bad_role)

    assert list_staff(test_db) == []


def test_list_staff_falls_back_to_account_email(test_db):
    add_user(test_db, "u7", "u7@kosthub.id")
    add_staff(test_db, "u7", "root")

    assert list_staff(test_db) == [{"user_id": "u7", "email": "u7@kosthub.id", "name": None, "role": "root"}]
