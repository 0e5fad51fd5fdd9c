from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# Enums
class Role(str, Enum):
    superadmin = "superadmin"
    admin = "admin"
    tenant = "tenant"


class SubscriptionStatus(str, Enum):
    active = "active"
    cancelled = "cancelled"
    expired = "expired"


class MarketplaceStatus(str, Enum):
    draft = "draft"
    published = "published"


class RoomStatus(str, Enum):
    vacant = "vacant"
    occupied = "occupied"
    maintenance = "maintenance"


class RenterGender(str, Enum):
    male = "male"
    female = "female"
    any = "any"


# Identity records
class StaffRecord(BaseModel):
    """Back-office staff registry row. `role` is kept raw so integrity can be checked."""
    user_id: str
    role: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


class Profile(BaseModel):
    """Generic user profile. `role` is an unverified claim."""
    user_id: str
    role: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    gender: Optional[str] = None


# Catalog
class Property(BaseModel):
    id: str
    owner_id: str
    name: str
    address: str = ""
    city: str = ""
    description: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    marketplace_enabled: bool = False
    marketplace_status: MarketplaceStatus = MarketplaceStatus.draft
    common_amenities: List[str] = Field(default_factory=list)
    parking_amenities: List[str] = Field(default_factory=list)
    rules: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)

    @property
    def is_public(self) -> bool:
        """Published to the marketplace (both switches on)."""
        return self.marketplace_enabled and self.marketplace_status == MarketplaceStatus.published


class RoomType(BaseModel):
    id: str
    property_id: str
    name: str
    price: float = Field(0.0, ge=0)  # monthly
    daily_price: Optional[float] = None
    weekly_price: Optional[float] = None
    yearly_price: Optional[float] = None
    enable_daily_price: bool = False
    enable_weekly_price: bool = False
    enable_yearly_price: bool = False
    description: Optional[str] = None
    room_facilities: List[str] = Field(default_factory=list)
    bathroom_facilities: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)
    max_occupancy: int = Field(1, ge=1, le=5)
    renter_gender: RenterGender = RenterGender.any


class Room(BaseModel):
    id: str
    property_id: str
    name: str
    type: str  # references RoomType.name within the same property
    status: RoomStatus = RoomStatus.vacant


class PropertyCatalog(BaseModel):
    """One property with its room types and rooms, as read from the catalog store."""
    property: Property
    room_types: List[RoomType] = Field(default_factory=list)
    rooms: List[Room] = Field(default_factory=list)

    def orphan_rooms(self) -> List[Room]:
        """Rooms whose type name is not defined for this property."""
        names = {rt.name for rt in self.room_types}
        return [room for room in self.rooms if room.type not in names]


# Billing
class SubscriptionPlan(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: float = 0.0
    max_properties: int = 1
    max_rooms_per_property: int = 10
    features: Dict[str, Any] = Field(default_factory=dict)


def parse_timestamp(value: Any, end_of_day: bool = False) -> Optional[datetime]:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    Accepts ISO-8601 with "T" or a space separator, any UTC offset or a
    trailing "Z", naive values (taken as UTC) and bare dates. A bare date
    means midnight, or the following midnight with end_of_day=True so the
    last day still counts.

    Raises:
        ValueError: unparseable value
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
        if end_of_day:
            parsed += timedelta(days=1)
    else:
        text = str(value).strip()
        if len(text) == 10:
            return parse_timestamp(date.fromisoformat(text), end_of_day)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text.replace(" ", "T", 1))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Subscription(BaseModel):
    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.active
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    plan: Optional[SubscriptionPlan] = None

    @field_validator("start_date", mode="before")
    @classmethod
    def _parse_start(cls, v):
        return parse_timestamp(v)

    @field_validator("end_date", mode="before")
    @classmethod
    def _parse_end(cls, v):
        return parse_timestamp(v, end_of_day=True)

    def is_active_at(self, now: datetime) -> bool:
        if self.status != SubscriptionStatus.active:
            return False
        return self.end_date is None or self.end_date > now

    @property
    def is_active(self) -> bool:
        """Active status and not past end_date."""
        return self.is_active_at(datetime.now(timezone.utc))
