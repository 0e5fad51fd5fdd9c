"""
kosthub/routes_marketplace.py

Public marketplace endpoints. No authentication: only published
properties (marketplace_enabled and status published) are ever read.

Renters' saved properties sit on their own tenant-only router
(/saved-properties) and pass through the same published filter.
"""

from __future__ import annotations

import sqlite3
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError

from kosthub.catalog import list_saved_properties, load_catalog, save_property, unsave_property
from kosthub.config import IS_DEV
from kosthub.db import get_db_connection
from kosthub.dependencies import require_role
from kosthub.errors import CatalogReadFailed
from kosthub.listings import (
    ListingFilters,
    PropertyDetail,
    describe_property,
    derive_listings,
    listing_facets,
)
from kosthub.models import Role
from kosthub.schemas import ListingsResponse, PartialFailureNotice, SavedProperty
from kosthub.session import IdentitySnapshot


router = APIRouter(prefix="/marketplace", tags=["marketplace"])

saved_router = APIRouter(prefix="/saved-properties", tags=["marketplace"])


@router.get("/listings", response_model=ListingsResponse)
def list_listings(
    search: Optional[str] = Query(None, max_length=100),
    city: Optional[str] = Query(None, max_length=100),
    min_price: Optional[float] = Query(None),
    max_price: Optional[float] = Query(None),
    gender: Optional[str] = Query(None),
    room_type: Optional[str] = Query(None, max_length=100),
    include_fully_booked: Optional[bool] = Query(None),
    sort: Optional[str] = Query(None),
):
    """
    Derived marketplace listings.

    Filters combine with AND. partial_failures lists properties whose
    catalog read failed; they are missing from this response only.
    """
    try:
        filters = ListingFilters(
            search=search,
            city=city,
            min_price=min_price,
            max_price=max_price,
            gender=gender,
            room_type=room_type,
            include_fully_booked=include_fully_booked,
            sort=sort,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    try:
        load = load_catalog()
    except sqlite3.Error as e:
        if IS_DEV:
            print(f"[LISTINGS] DB error: {e}")
        raise HTTPException(status_code=500, detail="Database error")

    listings = derive_listings(load.catalogs, filters)
    # facets describe everything a renter could pick, not just this page
    facets = listing_facets(
        derive_listings(load.catalogs, ListingFilters(include_fully_booked=filters.include_fully_booked))
    )

    return ListingsResponse(
        listings=listings,
        total=len(listings),
        facets=facets,
        partial_failures=[
            PartialFailureNotice(property_id=f.property_id, reason=f.reason)
            for f in load.partial_failures
        ],
    )


@router.get("/properties/{property_id}", response_model=PropertyDetail)
def get_property_detail(property_id: str):
    """Published property detail; unpublished or missing -> 404."""
    try:
        detail = describe_property(property_id)
    except CatalogReadFailed as e:
        print(f"[LISTINGS] Detail read failed: property_id={e.property_id}")
        raise HTTPException(status_code=503, detail="Property details temporarily unavailable")
    except sqlite3.Error as e:
        if IS_DEV:
            print(f"[LISTINGS] DB error: {e}")
        raise HTTPException(status_code=500, detail="Database error")

    if detail is None:
        raise HTTPException(status_code=404, detail="Property not found")
    return detail


# ============================================================================
# Saved properties (renters)
# ============================================================================

@saved_router.get("", response_model=List[SavedProperty])
def get_saved_properties(snapshot: IdentitySnapshot = Depends(require_role(Role.tenant))):
    with get_db_connection() as conn:
        return list_saved_properties(conn, snapshot.user_id)


@saved_router.put("/{property_id}", response_model=List[SavedProperty])
def put_saved_property(property_id: str, snapshot: IdentitySnapshot = Depends(require_role(Role.tenant))):
    """Save a published property (idempotent); unpublished or missing -> 404."""
    with get_db_connection() as conn:
        if not save_property(conn, snapshot.user_id, property_id):
            raise HTTPException(status_code=404, detail="Property not found")
        return list_saved_properties(conn, snapshot.user_id)


@saved_router.delete("/{property_id}", response_model=List[SavedProperty])
def delete_saved_property(property_id: str, snapshot: IdentitySnapshot = Depends(require_role(Role.tenant))):
    with get_db_connection() as conn:
        if not unsave_property(conn, snapshot.user_id, property_id):
            raise HTTPException(status_code=404, detail="Property is not saved")
        return list_saved_properties(conn, snapshot.user_id)
