"""
kosthub/schemas.py

Request/response schemas for the KostHub API.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from kosthub.entitlements import validate_feature_map
from kosthub.listings import MarketplaceListing
from kosthub.models import MarketplaceStatus, Role
from kosthub.navigation import NavigationResult, area_for_path


# ============================================================================
# Auth
# ============================================================================

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class RefreshRequest(BaseModel):
    session_id: str
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    session_id: str
    token_type: str = "bearer"
    user: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Session / Navigation
# ============================================================================

class SessionResponse(BaseModel):
    is_authenticated: Optional[bool]
    user_id: Optional[str] = None
    effective_role: Optional[Role] = None
    is_staff_member: bool = False
    email: Optional[str] = None
    auth_error: Optional[str] = None
    home: Optional[str] = None


class NavigationDecisionResponse(BaseModel):
    """
    Outcome for one navigation.

    outcome: allow | redirect | pending | contact_support
    location: redirect target with return_to attached (redirect only)
    shell: UI shell to render, None for pending/contact_support
    """
    path: str
    area: Optional[str] = None
    outcome: str
    target: Optional[str] = None
    return_to: Optional[str] = None
    location: Optional[str] = None
    shell: Optional[str] = None
    effective_role: Optional[Role] = None

    @classmethod
    def from_result(cls, result: NavigationResult) -> "NavigationDecisionResponse":
        decision = result.decision
        snapshot = result.snapshot
        return cls(
            path=result.path,
            area=area_for_path(result.path).name,
            outcome=decision.outcome.value,
            target=decision.target,
            return_to=decision.return_to,
            location=decision.location,
            shell=result.shell.value if result.shell else None,
            effective_role=snapshot.effective_role if snapshot else None,
        )


# ============================================================================
# Entitlements
# ============================================================================

class EntitlementSummaryResponse(BaseModel):
    plan: Optional[str] = None
    features: Dict[str, bool] = Field(default_factory=dict)
    tiers: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, int] = Field(default_factory=dict)
    lookup_failed: bool = False


class FeatureResponse(BaseModel):
    feature: str
    kind: str  # "boolean" or "graded"
    enabled: bool
    tier: Optional[str] = None


# ============================================================================
# Owner marketplace settings
# ============================================================================

class MarketplaceSettings(BaseModel):
    property_id: str
    name: str
    marketplace_enabled: bool
    marketplace_status: MarketplaceStatus
    description: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    common_amenities: List[str] = Field(default_factory=list)
    parking_amenities: List[str] = Field(default_factory=list)
    rules: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)


class MarketplaceSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""
    marketplace_enabled: Optional[bool] = None
    marketplace_status: Optional[MarketplaceStatus] = None
    description: Optional[str] = Field(None, max_length=2000)
    phone: Optional[str] = Field(None, max_length=40)
    email: Optional[str] = Field(None, max_length=254)
    common_amenities: Optional[List[str]] = None
    parking_amenities: Optional[List[str]] = None
    rules: Optional[List[str]] = None
    photos: Optional[List[str]] = None

    @field_validator("common_amenities", "parking_amenities", "rules", "photos")
    @classmethod
    def drop_blank_items(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [item.strip() for item in v if item and item.strip()]


# ============================================================================
# Marketplace
# ============================================================================

class PartialFailureNotice(BaseModel):
    property_id: str
    reason: str


class ListingsResponse(BaseModel):
    listings: List[MarketplaceListing]
    total: int
    facets: Dict[str, Any] = Field(default_factory=dict)
    partial_failures: List[PartialFailureNotice] = Field(default_factory=list)


# ============================================================================
# Back office
# ============================================================================

class SubscriptionRow(BaseModel):
    id: str
    user_id: str
    plan_id: str
    plan_name: Optional[str] = None
    status: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class PlanCreate(BaseModel):
    """New subscription plan. id defaults to a slug of the name."""
    id: Optional[str] = Field(None, min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str = Field(..., min_length=1, max_length=80)
    description: Optional[str] = Field(None, max_length=500)
    price: float = Field(0, ge=0)
    max_properties: int = Field(1, ge=0)
    max_rooms_per_property: int = Field(10, ge=0)
    features: Dict[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("features")
    @classmethod
    def check_features(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_feature_map(v)

    def plan_id(self) -> str:
        if self.id:
            return self.id
        slug = re.sub(r"[^a-z0-9]+", "-", self.name.strip().lower()).strip("-")
        return f"plan-{slug or 'unnamed'}"


class PlanUpdate(BaseModel):
    """Partial plan update; omitted fields keep their stored value."""
    name: Optional[str] = Field(None, min_length=1, max_length=80)
    description: Optional[str] = Field(None, max_length=500)
    price: Optional[float] = Field(None, ge=0)
    max_properties: Optional[int] = Field(None, ge=0)
    max_rooms_per_property: Optional[int] = Field(None, ge=0)
    features: Optional[Dict[str, Any]] = None

    @field_validator("features")
    @classmethod
    def check_features(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return None if v is None else validate_feature_map(v)


class StaffAssignment(BaseModel):
    role: Role
    name: Optional[str] = Field(None, max_length=120)


class StaffMember(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None


# ============================================================================
# Saved properties
# ============================================================================

class SavedProperty(BaseModel):
    property_id: str
    name: str
    address: str = ""
    city: str = ""
    photo: Optional[str] = None
    lowest_price: Optional[float] = None
    saved_at: Optional[str] = None
