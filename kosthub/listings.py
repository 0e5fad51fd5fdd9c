"""
kosthub/listings.py

Listing Derivation Engine for the public marketplace.

derive_listings(catalog, filters) flattens the published catalog into one
MarketplaceListing per (property, room type) and applies the renter's
filters as an AND of independent predicates.

No authentication happens here: the engine is reachable anonymously, and
privacy rests entirely on the published predicate (marketplace_enabled and
marketplace_status == published).
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from kosthub import config
from kosthub.catalog import ConnFactory, load_public_property
from kosthub.db import get_db
from kosthub.models import PropertyCatalog, RenterGender, RoomStatus, RoomType


SortOption = Literal["price_asc", "price_desc", "availability"]


class MarketplaceListing(BaseModel):
    """One bookable room type at one property (derived, never stored)."""
    property_id: str
    property_name: str
    address: str = ""
    city: str = ""
    description: Optional[str] = None
    room_type_id: str
    room_type: str
    lowest_price: float
    highest_price: float
    period_prices: Dict[str, float] = Field(default_factory=dict)
    available_room_count: int = 0
    total_room_count: int = 0
    facilities: List[str] = Field(default_factory=list)
    room_facilities: List[str] = Field(default_factory=list)
    bathroom_facilities: List[str] = Field(default_factory=list)
    common_amenities: List[str] = Field(default_factory=list)
    renter_gender: RenterGender = RenterGender.any
    max_occupancy: int = 1
    photo: Optional[str] = None

    @property
    def is_fully_booked(self) -> bool:
        return self.available_room_count == 0


class ListingFilters(BaseModel):
    """
    Renter-side filters. Every unset field imposes no constraint.

    include_fully_booked=None falls back to MARKETPLACE_INCLUDE_FULLY_BOOKED.
    """
    search: Optional[str] = None
    city: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    gender: Optional[RenterGender] = None
    room_type: Optional[str] = None
    include_fully_booked: Optional[bool] = None
    sort: Optional[SortOption] = None

    @field_validator("search", "city", "room_type", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @model_validator(mode="after")
    def price_bounds_ordered(self):
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")
        return self


# ---------------------------------------------------------
# Derivation
# ---------------------------------------------------------
def period_prices(room_type: RoomType) -> Dict[str, float]:
    """Alternative rental periods that are both enabled and priced."""
    prices: Dict[str, float] = {}
    for period in ("daily", "weekly", "yearly"):
        price = getattr(room_type, f"{period}_price")
        if getattr(room_type, f"enable_{period}_price") and price is not None:
            prices[period] = price
    return prices


def build_listing(entry: PropertyCatalog, room_type: RoomType) -> MarketplaceListing:
    prop = entry.property
    rooms = [room for room in entry.rooms if room.type == room_type.name]
    available = sum(1 for room in rooms if room.status == RoomStatus.vacant)

    facilities = sorted(set(room_type.room_facilities) | set(room_type.bathroom_facilities))
    photos = room_type.photos or prop.photos

    return MarketplaceListing(
        property_id=prop.id,
        property_name=prop.name,
        address=prop.address,
        city=prop.city,
        description=prop.description,
        room_type_id=room_type.id,
        room_type=room_type.name,
        # price is per type, so one type's bounds coincide
        lowest_price=room_type.price,
        highest_price=room_type.price,
        period_prices=period_prices(room_type),
        available_room_count=available,
        total_room_count=len(rooms),
        facilities=facilities,
        room_facilities=list(room_type.room_facilities),
        bathroom_facilities=list(room_type.bathroom_facilities),
        common_amenities=list(prop.common_amenities),
        renter_gender=room_type.renter_gender,
        max_occupancy=room_type.max_occupancy,
        photo=photos[0] if photos else None,
    )


def matches_search(listing: MarketplaceListing, term: Optional[str]) -> bool:
    if not term:
        return True
    needle = term.lower()
    fields = (listing.property_name, listing.city, listing.address, listing.description or "")
    return any(needle in value.lower() for value in fields)


def matches_city(listing: MarketplaceListing, city: Optional[str]) -> bool:
    return not city or listing.city.strip().lower() == city.lower()


def matches_price(listing: MarketplaceListing, min_price: Optional[float], max_price: Optional[float]) -> bool:
    if min_price is not None and listing.lowest_price < min_price:
        return False
    if max_price is not None and listing.highest_price > max_price:
        return False
    return True


def matches_gender(listing: MarketplaceListing, gender: Optional[RenterGender]) -> bool:
    if gender is None:
        return True
    return listing.renter_gender in (gender, RenterGender.any)


def matches_room_type(listing: MarketplaceListing, room_type: Optional[str]) -> bool:
    return not room_type or listing.room_type.lower() == room_type.lower()


def passes_filters(listing: MarketplaceListing, filters: ListingFilters) -> bool:
    return (
        matches_search(listing, filters.search)
        and matches_city(listing, filters.city)
        and matches_price(listing, filters.min_price, filters.max_price)
        and matches_gender(listing, filters.gender)
        and matches_room_type(listing, filters.room_type)
    )


def sort_listings(listings: List[MarketplaceListing], sort: Optional[SortOption]) -> List[MarketplaceListing]:
    """Stable sorts; None keeps catalog order."""
    if sort == "price_asc":
        return sorted(listings, key=lambda l: l.lowest_price)
    if sort == "price_desc":
        return sorted(listings, key=lambda l: l.lowest_price, reverse=True)
    if sort == "availability":
        return sorted(listings, key=lambda l: l.available_room_count, reverse=True)
    return list(listings)


def derive_listings(
    catalog: Iterable[PropertyCatalog],
    filters: Optional[ListingFilters] = None,
) -> List[MarketplaceListing]:
    """
    Flatten the catalog into filtered marketplace listings.

    Properties that are not published never contribute, whatever the
    filters. A room type with no rooms of its own yields no listing; the
    fully-booked flag only governs types whose rooms are all taken.
    """
    filters = filters or ListingFilters()
    include_fully_booked = (
        config.MARKETPLACE_INCLUDE_FULLY_BOOKED
        if filters.include_fully_booked is None
        else filters.include_fully_booked
    )

    listings: List[MarketplaceListing] = []
    for entry in catalog:
        if not entry.property.is_public:
            continue
        for room_type in entry.room_types:
            listing = build_listing(entry, room_type)
            if listing.total_room_count == 0:
                continue
            if listing.is_fully_booked and not include_fully_booked:
                continue
            if passes_filters(listing, filters):
                listings.append(listing)

    if config.IS_DEV:
        print(f"[LISTINGS] Derived {len(listings)} listings "
              f"(include_fully_booked={include_fully_booked}, sort={filters.sort})")
    return sort_listings(listings, filters.sort)


def listing_facets(listings: Iterable[MarketplaceListing]) -> Dict[str, object]:
    """Distinct cities, room types and the price span, for filter pickers."""
    listings = list(listings)
    prices = [l.lowest_price for l in listings]
    return {
        "cities": sorted({l.city for l in listings if l.city}),
        "room_types": sorted({l.room_type for l in listings}),
        "min_price": min(prices) if prices else None,
        "max_price": max(prices) if prices else None,
    }


# ---------------------------------------------------------
# Property detail
# ---------------------------------------------------------
class RoomTypeDetail(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: float
    period_prices: Dict[str, float] = Field(default_factory=dict)
    room_facilities: List[str] = Field(default_factory=list)
    bathroom_facilities: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)
    max_occupancy: int = 1
    renter_gender: RenterGender = RenterGender.any
    available_room_count: int = 0


class PropertyDetail(BaseModel):
    id: str
    name: str
    address: str = ""
    city: str = ""
    description: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    common_amenities: List[str] = Field(default_factory=list)
    parking_amenities: List[str] = Field(default_factory=list)
    rules: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)
    room_types: List[RoomTypeDetail] = Field(default_factory=list)


def property_detail(entry: PropertyCatalog) -> PropertyDetail:
    prop = entry.property
    room_types = []
    for room_type in entry.room_types:
        listing = build_listing(entry, room_type)
        room_types.append(RoomTypeDetail(
            id=room_type.id,
            name=room_type.name,
            description=room_type.description,
            price=room_type.price,
            period_prices=listing.period_prices,
            room_facilities=list(room_type.room_facilities),
            bathroom_facilities=list(room_type.bathroom_facilities),
            photos=list(room_type.photos),
            max_occupancy=room_type.max_occupancy,
            renter_gender=room_type.renter_gender,
            available_room_count=listing.available_room_count,
        ))
    return PropertyDetail(
        id=prop.id,
        name=prop.name,
        address=prop.address,
        city=prop.city,
        description=prop.description,
        phone=prop.phone,
        email=prop.email,
        common_amenities=list(prop.common_amenities),
        parking_amenities=list(prop.parking_amenities),
        rules=list(prop.rules),
        photos=list(prop.photos),
        room_types=room_types,
    )


def describe_property(
    property_id: str,
    conn_factory: ConnFactory = get_db,
) -> Optional[PropertyDetail]:
    """Public detail view; None for missing or unpublished properties."""
    entry = load_public_property(property_id, conn_factory)
    if entry is None:
        return None
    return property_detail(entry)
