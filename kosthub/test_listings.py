"""
kosthub/test_listings.py

Tests for the Listing Derivation Engine.

Tests verify:
1. Only enabled + published properties produce listings, under any filter
2. One listing per room type, lowest = highest = type price
3. Availability counts vacant rooms of the matching type only; a type with
   no rooms is never listed
4. Filters combine as an AND of independent predicates
5. Fully booked listings follow the configured flag and per-request override
6. Catalog order is preserved unless a sort is requested
"""

import itertools

import pytest
from pydantic import ValidationError

from kosthub import config
from kosthub.listings import (
    ListingFilters,
    derive_listings,
    listing_facets,
    matches_city,
    matches_gender,
    matches_price,
    matches_room_type,
    matches_search,
    property_detail,
)
from kosthub.models import Property, PropertyCatalog, Room, RoomType


# ============================================================================
# Builders
# ============================================================================

def make_property(pid, enabled=True, status="published", **kwargs):
    defaults = {"name": f"Kost {pid}", "city": "Yogyakarta", "address": f"Jl. {pid}"}
    defaults.update(kwargs)
    return Property(
        id=pid,
        owner_id="owner-1",
        marketplace_enabled=enabled,
        marketplace_status=status,
        **defaults,
    )


def make_type(pid, name, price, **kwargs):
    return RoomType(id=f"{pid}-{name}", property_id=pid, name=name, price=price, **kwargs)


def make_room(pid, name, type_name, status="vacant"):
    return Room(id=f"{pid}-{name}", property_id=pid, name=name, type=type_name, status=status)


def p1_catalog(**property_kwargs):
    """P1: Single @ 900000 with one vacant and one occupied room."""
    return PropertyCatalog(
        property=make_property("P1", **property_kwargs),
        room_types=[make_type("P1", "Single", 900000)],
        rooms=[
            make_room("P1", "A1", "Single", "vacant"),
            make_room("P1", "A2", "Single", "occupied"),
        ],
    )


@pytest.fixture(autouse=True)
def include_fully_booked_by_default(monkeypatch):
    monkeypatch.setattr(config, "MARKETPLACE_INCLUDE_FULLY_BOOKED", True)


@pytest.fixture
def market():
    """A small catalog with a variety of cities, prices and genders."""
    return [
        PropertyCatalog(
            property=make_property("P1", name="Kost Melati", city="Yogyakarta",
                                   description="Dekat kampus UGM"),
            room_types=[
                make_type("P1", "Single", 900000, renter_gender="female",
                          room_facilities=["Bed", "Desk"], bathroom_facilities=["Shower"]),
                make_type("P1", "Deluxe", 1500000, renter_gender="any",
                          room_facilities=["Bed", "AC"], bathroom_facilities=["Shower", "Water heater"]),
            ],
            rooms=[
                make_room("P1", "A1", "Single", "vacant"),
                make_room("P1", "A2", "Single", "occupied"),
                make_room("P1", "B1", "Deluxe", "maintenance"),
            ],
        ),
        PropertyCatalog(
            property=make_property("P2", name="Kost Mawar", city="Bandung", address="Jl. Dago 10"),
            room_types=[make_type("P2", "Single", 750000, renter_gender="male")],
            rooms=[make_room("P2", "1", "Single"), make_room("P2", "2", "Single")],
        ),
        PropertyCatalog(
            property=make_property("P3", name="Kost Anggrek", city="bandung"),
            room_types=[make_type("P3", "Suite", 2500000)],
            rooms=[make_room("P3", "S1", "Suite")],
        ),
    ]


def keys(listings):
    return [(l.property_id, l.room_type) for l in listings]


# ============================================================================
# Scenarios
# ============================================================================

def test_scenario_published_property_single_type():
    listings = derive_listings([p1_catalog()])

    assert len(listings) == 1
    listing = listings[0]
    assert (listing.property_id, listing.room_type) == ("P1", "Single")
    assert listing.available_room_count == 1
    assert listing.total_room_count == 2
    assert listing.lowest_price == listing.highest_price == 900000


def test_scenario_disabled_property_yields_nothing():
    assert derive_listings([p1_catalog(enabled=False)]) == []


def test_draft_property_yields_nothing():
    assert derive_listings([p1_catalog(status="draft")]) == []


FILTER_GRID = [
    ListingFilters(),
    ListingFilters(search="kost"),
    ListingFilters(city="Yogyakarta"),
    ListingFilters(min_price=0, max_price=10_000_000),
    ListingFilters(gender="any"),
    ListingFilters(room_type="Single"),
    ListingFilters(include_fully_booked=True, sort="price_desc"),
]


@pytest.mark.parametrize("filters", FILTER_GRID)
def test_unpublished_never_leaks_under_any_filter(filters):
    hidden = [p1_catalog(enabled=False), p1_catalog(status="draft")]

    assert derive_listings(hidden, filters) == []


def test_one_listing_per_room_type_priced_by_type(market):
    listings = [l for l in derive_listings(market) if l.property_id == "P1"]

    assert keys(listings) == [("P1", "Single"), ("P1", "Deluxe")]
    for listing in listings:
        expected = 900000 if listing.room_type == "Single" else 1500000
        assert listing.lowest_price == listing.highest_price == expected


def test_availability_counts_vacant_rooms_of_type_only(market):
    by_key = {(l.property_id, l.room_type): l for l in derive_listings(market)}

    assert by_key[("P1", "Single")].available_room_count == 1
    assert by_key[("P1", "Deluxe")].available_room_count == 0  # maintenance is not vacant
    assert by_key[("P2", "Single")].available_room_count == 2


def test_property_without_room_types_yields_nothing():
    entry = PropertyCatalog(property=make_property("P9"), room_types=[], rooms=[])

    assert derive_listings([entry]) == []


@pytest.mark.parametrize("include_fully_booked", [True, False, None])
def test_type_without_rooms_yields_no_listing(include_fully_booked):
    entry = PropertyCatalog(
        property=make_property("P1"),
        room_types=[make_type("P1", "Single", 900000), make_type("P1", "Empty", 500000)],
        rooms=[make_room("P1", "A1", "Single", "vacant")],
    )

    listings = derive_listings([entry], ListingFilters(include_fully_booked=include_fully_booked))

    assert keys(listings) == [("P1", "Single")]
    assert listing_facets(listings)["room_types"] == ["Single"]
    assert listing_facets(listings)["min_price"] == 900000


def test_fully_booked_type_listed_but_room_less_type_never():
    entry = PropertyCatalog(
        property=make_property("P1"),
        room_types=[make_type("P1", "Single", 900000), make_type("P1", "Ghost", 500000)],
        rooms=[make_room("P1", "A1", "Single", "occupied")],
    )

    listings = derive_listings([entry], ListingFilters(include_fully_booked=True))

    assert [(l.room_type, l.total_room_count, l.available_room_count) for l in listings] == [("Single", 1, 0)]
    assert derive_listings([entry], ListingFilters(include_fully_booked=False)) == []


def test_facilities_are_unioned(market):
    deluxe = next(l for l in derive_listings(market) if l.room_type == "Deluxe")

    assert deluxe.facilities == ["AC", "Bed", "Shower", "Water heater"]


# ============================================================================
# Fully booked flag
# ============================================================================

def test_fully_booked_excluded_on_request(market):
    listings = derive_listings(market, ListingFilters(include_fully_booked=False))

    assert ("P1", "Deluxe") not in keys(listings)
    assert all(l.available_room_count > 0 for l in listings)


def test_fully_booked_follows_config_default(market, monkeypatch):
    monkeypatch.setattr(config, "MARKETPLACE_INCLUDE_FULLY_BOOKED", False)
    assert ("P1", "Deluxe") not in keys(derive_listings(market))

    monkeypatch.setattr(config, "MARKETPLACE_INCLUDE_FULLY_BOOKED", True)
    assert ("P1", "Deluxe") in keys(derive_listings(market))


def test_request_override_beats_config(market, monkeypatch):
    monkeypatch.setattr(config, "MARKETPLACE_INCLUDE_FULLY_BOOKED", False)

    listings = derive_listings(market, ListingFilters(include_fully_booked=True))

    assert ("P1", "Deluxe") in keys(listings)


# ============================================================================
# Filters
# ============================================================================

def test_search_matches_any_field_case_insensitive(market):
    assert {l.property_id for l in derive_listings(market, ListingFilters(search="MELATI"))} == {"P1"}
    assert {l.property_id for l in derive_listings(market, ListingFilters(search="dago"))} == {"P2"}
    assert {l.property_id for l in derive_listings(market, ListingFilters(search="ugm"))} == {"P1"}
    assert {l.property_id for l in derive_listings(market, ListingFilters(search="bandung"))} == {"P2", "P3"}


def test_city_is_case_insensitive_equality(market):
    listings = derive_listings(market, ListingFilters(city="Bandung"))

    assert {l.property_id for l in listings} == {"P2", "P3"}


def test_price_range_bounds(market):
    listings = derive_listings(market, ListingFilters(min_price=800000, max_price=1500000))

    assert keys(listings) == [("P1", "Single"), ("P1", "Deluxe")]


def test_unset_price_bound_imposes_no_constraint(market):
    assert len(derive_listings(market, ListingFilters(max_price=800000))) == 1
    assert len(derive_listings(market, ListingFilters(min_price=2000000))) == 1


def test_gender_filter_includes_any(market):
    listings = derive_listings(market, ListingFilters(gender="female"))

    assert keys(listings) == [("P1", "Single"), ("P1", "Deluxe"), ("P3", "Suite")]


def test_room_type_filter(market):
    listings = derive_listings(market, ListingFilters(room_type="single"))

    assert keys(listings) == [("P1", "Single"), ("P2", "Single")]


CONJUNCTION_FILTERS = [
    ListingFilters(**dict(combo))
    for r in range(1, 4)
    for combo in itertools.combinations(
        [("search", "kost"), ("city", "bandung"), ("max_price", 1000000),
         ("gender", "male"), ("room_type", "Single")],
        r,
    )
]


@pytest.mark.parametrize("filters", CONJUNCTION_FILTERS)
def test_filter_conjunction(market, filters):
    everything = derive_listings(market)

    expected = [
        l for l in everything
        if matches_search(l, filters.search)
        and matches_city(l, filters.city)
        and matches_price(l, filters.min_price, filters.max_price)
        and matches_gender(l, filters.gender)
        and matches_room_type(l, filters.room_type)
    ]

    assert derive_listings(market, filters) == expected


def test_blank_filters_are_ignored():
    filters = ListingFilters(search="  ", city="", room_type=" ")

    assert filters.search is None and filters.city is None and filters.room_type is None


def test_inverted_price_range_rejected():
    with pytest.raises(ValidationError):
        ListingFilters(min_price=2000000, max_price=1000000)


# ============================================================================
# Order
# ============================================================================

def test_catalog_order_preserved_without_sort(market):
    assert [l.property_id for l in derive_listings(market)] == ["P1", "P1", "P2", "P3"]


def test_price_sorts_are_stable(market):
    asc = derive_listings(market, ListingFilters(sort="price_asc"))
    desc = derive_listings(market, ListingFilters(sort="price_desc"))

    assert [l.lowest_price for l in asc] == [750000, 900000, 1500000, 2500000]
    assert [l.lowest_price for l in desc] == [2500000, 1500000, 900000, 750000]


def test_availability_sort(market):
    listings = derive_listings(market, ListingFilters(sort="availability"))

    assert [l.available_room_count for l in listings] == [2, 1, 1, 0]
    # ties keep catalog order
    assert keys(listings)[1:3] == [("P1", "Single"), ("P3", "Suite")]


# ============================================================================
# Facets / detail
# ============================================================================

def test_listing_facets(market):
    facets = listing_facets(derive_listings(market))

    assert facets["cities"] == ["Bandung", "Yogyakarta", "bandung"]
    assert facets["room_types"] == ["Deluxe", "Single", "Suite"]
    assert facets["min_price"] == 750000
    assert facets["max_price"] == 2500000


def test_listing_facets_empty():
    assert listing_facets([]) == {"cities": [], "room_types": [], "min_price": None, "max_price": None}


def test_property_detail_includes_enabled_period_prices():
    entry = PropertyCatalog(
        property=make_property("P1"),
        room_types=[make_type("P1", "Single", 900000, daily_price=60000, enable_daily_price=True,
                              weekly_price=300000, enable_weekly_price=False)],
        rooms=[make_room("P1", "A1", "Single")],
    )

    detail = property_detail(entry)

    assert detail.room_types[0].period_prices == {"daily": 60000}
    assert detail.room_types[0].available_room_count == 1
