"""
kosthub/routes_owner.py

Owner-console endpoints: entitlement lookups and marketplace settings.

Security guarantees:
- All endpoints require the admin (owner) role
- Properties are scoped to the caller's user id; other owners' properties
  return 404 (not 403) so their existence is not leaked
- Any update that leaves a property public on the marketplace requires the
  marketplace_listing feature on an ACTIVE plan, enforced here and not only
  in the UI. Unlisting (disable or back to draft) is always allowed
"""

from __future__ import annotations

import sqlite3
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from kosthub.catalog import get_property, list_owner_properties
from kosthub.config import IS_DEV
from kosthub.db import dump_json, get_db_connection
from kosthub.dependencies import enforce_feature, require_role
from kosthub.entitlements import (
    GRADED_FEATURES,
    Feature,
    is_known_feature,
    load_entitlements,
)
from kosthub.models import MarketplaceStatus, Property, Role
from kosthub.schemas import (
    EntitlementSummaryResponse,
    FeatureResponse,
    MarketplaceSettings,
    MarketplaceSettingsUpdate,
)
from kosthub.session import IdentitySnapshot


entitlements_router = APIRouter(prefix="/entitlements", tags=["entitlements"])

router = APIRouter(prefix="/owner", tags=["owner"])

LIST_COLUMNS = ("common_amenities", "parking_amenities", "rules", "photos")


# ============================================================================
# Entitlements
# ============================================================================

@entitlements_router.get("", response_model=EntitlementSummaryResponse)
def get_entitlements(snapshot: IdentitySnapshot = Depends(require_role(Role.admin))):
    """Plan, features, tiers and limits for the calling owner."""
    return load_entitlements(snapshot.user_id).summary()


@entitlements_router.get("/{feature}", response_model=FeatureResponse)
def get_feature(feature: str, snapshot: IdentitySnapshot = Depends(require_role(Role.admin))):
    if not is_known_feature(feature):
        raise HTTPException(status_code=404, detail=f"Unknown feature '{feature}'")

    entitlements = load_entitlements(snapshot.user_id)
    if feature in GRADED_FEATURES:
        return FeatureResponse(
            feature=feature,
            kind="graded",
            enabled=entitlements.has(feature),
            tier=entitlements.tier(feature),
        )
    return FeatureResponse(feature=feature, kind="boolean", enabled=entitlements.has(feature))


# ============================================================================
# Marketplace settings
# ============================================================================

def _to_settings(prop: Property) -> MarketplaceSettings:
    return MarketplaceSettings(
        property_id=prop.id,
        name=prop.name,
        marketplace_enabled=prop.marketplace_enabled,
        marketplace_status=prop.marketplace_status,
        description=prop.description,
        phone=prop.phone,
        email=prop.email,
        common_amenities=prop.common_amenities,
        parking_amenities=prop.parking_amenities,
        rules=prop.rules,
        photos=prop.photos,
    )


def _require_owned_property(conn: sqlite3.Connection, property_id: str, owner_id: str) -> Property:
    prop = get_property(conn, property_id)
    if prop is None or prop.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Property not found")
    return prop


def _stays_public(prop: Property, changes: dict) -> bool:
    enabled = changes.get("marketplace_enabled", prop.marketplace_enabled)
    status = changes.get("marketplace_status", prop.marketplace_status)
    return bool(enabled) and status == MarketplaceStatus.published


@router.get("/properties", response_model=List[MarketplaceSettings])
def get_owner_properties(snapshot: IdentitySnapshot = Depends(require_role(Role.admin))):
    """The caller's own properties with their marketplace settings."""
    with get_db_connection() as conn:
        props = list_owner_properties(conn, snapshot.user_id)
    return [_to_settings(prop) for prop in props]


@router.get("/properties/{property_id}/marketplace", response_model=MarketplaceSettings)
def get_marketplace_settings(
    property_id: str,
    snapshot: IdentitySnapshot = Depends(require_role(Role.admin)),
):
    with get_db_connection() as conn:
        prop = _require_owned_property(conn, property_id, snapshot.user_id)
    return _to_settings(prop)


@router.put("/properties/{property_id}/marketplace", response_model=MarketplaceSettings)
def update_marketplace_settings(
    property_id: str,
    update: MarketplaceSettingsUpdate,
    snapshot: IdentitySnapshot = Depends(require_role(Role.admin)),
):
    """
    Update a property's marketplace visibility and public details.

    Raises:
        HTTPException(402): the property would stay public and marketplace_listing
            is not in the active plan
        HTTPException(404): property missing or owned by someone else
    """
    changes = update.model_dump(exclude_unset=True)

    with get_db_connection() as conn:
        current = _require_owned_property(conn, property_id, snapshot.user_id)
        if _stays_public(current, changes):
            enforce_feature(snapshot.user_id, Feature.MARKETPLACE_LISTING)

        if changes:
            assignments = []
            params = []
            for column, value in changes.items():
                if column in LIST_COLUMNS:
                    value = dump_json(value)
                elif column == "marketplace_enabled":
                    value = 1 if value else 0
                elif column == "marketplace_status" and value is not None:
                    value = value.value
                assignments.append(f"{column} = ?")
                params.append(value)
            params.append(property_id)

            # column names come from the schema, never from the client
            conn.execute(f"UPDATE properties SET {', '.join(assignments)} WHERE id = ?", params)
            conn.commit()

        prop = get_property(conn, property_id)

    if IS_DEV:
        print(f"[OWNER] Marketplace settings updated: property_id={property_id}, "
              f"fields={sorted(changes)}, public={prop.is_public}")
    return _to_settings(prop)
