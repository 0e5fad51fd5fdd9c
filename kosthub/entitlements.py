"""
kosthub/entitlements.py

Subscription-aware Entitlement Gate for KostHub owners.

This module centralizes the logic for:
- Fetching an owner's active subscription joined to its plan
- Reading the plan's feature map (boolean and graded features)
- Answering has_feature / feature_tier / plan_limit checks
- Back-office plan writes, with strict feature-map validation

Key principles:
- Only an ACTIVE subscription grants anything. Cancelled/expired = nothing.
- No active subscription: every boolean feature is False and every graded
  feature sits at its lowest tier.
- Store failures fail CLOSED (treated as "no active entitlement").
- UI checks are advisory; write paths must call require_feature() too.

Source of truth: subscriptions + subscription_plans tables
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from kosthub.config import IS_DEV
from kosthub.db import dump_json, get_db, json_object
from kosthub.errors import EntitlementLookupFailed, FeatureNotAllowedError
from kosthub.models import Subscription, SubscriptionPlan, SubscriptionStatus


# ============================================================================
# Feature Catalog
# ============================================================================

class Feature:
    """Feature keys understood by the gate."""
    TENANT_DATA = "tenant_data"
    AUTO_BILLING = "auto_billing"
    BILLING_NOTIFICATIONS = "billing_notifications"
    MULTI_USER = "multi_user"
    ANALYTICS = "analytics"
    MARKETPLACE_LISTING = "marketplace_listing"
    FINANCIAL_REPORTS = "financial_reports"
    DATA_BACKUP = "data_backup"
    SUPPORT = "support"


BOOLEAN_FEATURES = frozenset({
    Feature.TENANT_DATA,
    Feature.AUTO_BILLING,
    Feature.BILLING_NOTIFICATIONS,
    Feature.MULTI_USER,
    Feature.ANALYTICS,
    Feature.MARKETPLACE_LISTING,
})

# Graded features, lowest tier first.
GRADED_FEATURES: Dict[str, tuple] = {
    Feature.FINANCIAL_REPORTS: ("basic", "advanced", "predictive"),
    Feature.DATA_BACKUP: ("none", "weekly", "daily", "realtime"),
    Feature.SUPPORT: ("basic", "priority", "24/7"),
}

PLAN_LIMIT_NAMES = ("max_properties", "max_rooms_per_property")

# Writable plan columns; UPDATE statements are built only from these.
PLAN_COLUMNS = ("name", "description", "price", "max_properties", "max_rooms_per_property", "features")


def is_known_feature(key: str) -> bool:
    return key in BOOLEAN_FEATURES or key in GRADED_FEATURES


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "on", "yes", "1")
    return False


def _as_tier(key: str, value: Any) -> str:
    tiers = GRADED_FEATURES[key]
    if isinstance(value, str) and value.strip().lower() in tiers:
        return value.strip().lower()
    # e.g. data_backup stored as false/"false" means no backup
    return tiers[0]


# ============================================================================
# Entitlement Set
# ============================================================================

@dataclass(frozen=True)
class EntitlementSet:
    """
    Feature view of one owner's active plan (or of no plan at all).

    lookup_failed marks a fail-closed set produced because the store was
    unreachable, so callers can surface a retry hint.
    """
    owner_id: str
    plan_name: Optional[str] = None
    features: Dict[str, Any] = field(default_factory=dict)
    limits: Dict[str, int] = field(default_factory=dict)
    lookup_failed: bool = False

    @property
    def has_active_plan(self) -> bool:
        return self.plan_name is not None

    def has(self, key: str) -> bool:
        if key in GRADED_FEATURES:
            return self.tier(key) != GRADED_FEATURES[key][0]
        if key not in BOOLEAN_FEATURES:
            return False
        return _as_bool(self.features.get(key, False))

    def tier(self, key: str) -> str:
        if key not in GRADED_FEATURES:
            raise ValueError(f"'{key}' is not a graded feature")
        return _as_tier(key, self.features.get(key))

    def tier_at_least(self, key: str, required: str) -> bool:
        tiers = GRADED_FEATURES.get(key)
        if tiers is None or required not in tiers:
            raise ValueError(f"Unknown tier {required!r} for feature '{key}'")
        return tiers.index(self.tier(key)) >= tiers.index(required)

    def limit(self, name: str) -> int:
        return int(self.limits.get(name, 0))

    def summary(self) -> Dict[str, Any]:
        return {
            "plan": self.plan_name,
            "features": {key: self.has(key) for key in sorted(BOOLEAN_FEATURES)},
            "tiers": {key: self.tier(key) for key in sorted(GRADED_FEATURES)},
            "limits": {name: self.limit(name) for name in PLAN_LIMIT_NAMES},
            "lookup_failed": self.lookup_failed,
        }


def no_entitlements(owner_id: str, lookup_failed: bool = False) -> EntitlementSet:
    return EntitlementSet(owner_id=owner_id, lookup_failed=lookup_failed)


# ============================================================================
# Subscription Queries
# ============================================================================

def _row_to_plan(row: sqlite3.Row, prefix: str = "") -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row[f"{prefix}id"],
        name=row[f"{prefix}name"],
        description=row[f"{prefix}description"],
        price=row[f"{prefix}price"] or 0.0,
        max_properties=row[f"{prefix}max_properties"] or 0,
        max_rooms_per_property=row[f"{prefix}max_rooms_per_property"] or 0,
        features=json_object(row[f"{prefix}features"]),
    )


def get_active_subscription(conn: sqlite3.Connection, owner_id: str) -> Optional[Subscription]:
    """
    Fetch the owner's active subscription joined to its plan.

    A subscription whose end_date has passed is not active even if its
    status was never flipped to expired.

    Returns:
        Subscription with .plan populated, or None
    """
    now = datetime.now(timezone.utc)
    rows = conn.execute(
        """
        SELECT
            s.id, s.user_id, s.plan_id, s.status, s.start_date, s.end_date,
            p.name AS plan_name, p.description AS plan_description,
            p.price AS plan_price, p.max_properties AS plan_max_properties,
            p.max_rooms_per_property AS plan_max_rooms_per_property,
            p.features AS plan_features
        FROM subscriptions s
        JOIN subscription_plans p ON p.id = s.plan_id
        WHERE s.user_id = ?
          AND s.status = 'active'
        """,
        (owner_id,),
    ).fetchall()

    # dates compare as aware datetimes, never as stored text
    candidates = []
    for row in rows:
        try:
            subscription = _row_to_subscription(row)
        except ValidationError:
            print(f"[ENTITLEMENTS] Unreadable subscription dates skipped: subscription_id={row['id']}")
            continue
        if subscription.is_active_at(now):
            candidates.append(subscription)

    if not candidates:
        return None
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return max(candidates, key=lambda s: s.start_date or epoch)


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    # s.plan_id doubles as the plan's own id under the "plan_" prefix
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        plan=_row_to_plan(row, prefix="plan_"),
    )


def list_plans(conn: sqlite3.Connection) -> list[SubscriptionPlan]:
    rows = conn.execute(
        """
        SELECT id, name, description, price, max_properties, max_rooms_per_property, features
        FROM subscription_plans
        ORDER BY price
        """
    ).fetchall()
    return [_row_to_plan(row) for row in rows]


def get_plan(conn: sqlite3.Connection, plan_id: str) -> Optional[SubscriptionPlan]:
    row = conn.execute(
        """
        SELECT id, name, description, price, max_properties, max_rooms_per_property, features
        FROM subscription_plans
        WHERE id = ?
        """,
        (plan_id,),
    ).fetchone()
    return _row_to_plan(row) if row else None


# ============================================================================
# Plan Writes (back office)
# ============================================================================

def validate_feature_map(features: Dict[str, Any]) -> Dict[str, Any]:
    """
    Write-side check of a plan's feature map.

    Reads are lenient (legacy "true"/1/false values still resolve), writes
    are strict: booleans must be real booleans and graded values must name
    one of the feature's tiers. Omitted features are filled in as off /
    lowest tier so every stored plan carries the full map.

    Raises:
        ValueError: unknown keys or invalid values, all listed at once
    """
    problems = []
    for key in sorted(features):
        if not is_known_feature(key):
            problems.append(f"unknown feature '{key}'")

    normalized: Dict[str, Any] = {}
    for key in sorted(BOOLEAN_FEATURES):
        value = features.get(key, False)
        if not isinstance(value, bool):
            problems.append(f"'{key}' must be true or false")
        normalized[key] = value

    for key, tiers in GRADED_FEATURES.items():
        value = features.get(key, tiers[0])
        tier = value.strip().lower() if isinstance(value, str) else None
        if tier not in tiers:
            problems.append(f"'{key}' must be one of {', '.join(tiers)}")
        normalized[key] = tier

    if problems:
        raise ValueError("; ".join(problems))
    return normalized


def create_plan(conn: sqlite3.Connection, plan: SubscriptionPlan) -> SubscriptionPlan:
    """
    Insert a new plan. The feature map must already be validated.

    Raises:
        sqlite3.IntegrityError: a plan with this id exists
    """
    conn.execute(
        """
        INSERT INTO subscription_plans (id, name, description, price, max_properties,
                                        max_rooms_per_property, features)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            plan.id,
            plan.name,
            plan.description,
            plan.price,
            plan.max_properties,
            plan.max_rooms_per_property,
            dump_json(plan.features),
        ),
    )
    conn.commit()
    print(f"[ENTITLEMENTS] Plan created: plan_id={plan.id}")
    return get_plan(conn, plan.id)


def update_plan(conn: sqlite3.Connection, plan_id: str, changes: Dict[str, Any]) -> Optional[SubscriptionPlan]:
    """
    Apply a partial update. Returns None when the plan does not exist.

    Feature changes take effect on each owner's next entitlement check.
    """
    if get_plan(conn, plan_id) is None:
        return None

    if changes:
        assignments = []
        params = []
        for column in PLAN_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if column == "features":
                value = dump_json(value)
            assignments.append(f"{column} = ?")
            params.append(value)
        params.append(plan_id)
        conn.execute(f"UPDATE subscription_plans SET {', '.join(assignments)} WHERE id = ?", params)
        conn.commit()
        print(f"[ENTITLEMENTS] Plan updated: plan_id={plan_id}, fields={sorted(changes)}")
    return get_plan(conn, plan_id)


# ============================================================================
# Gate
# ============================================================================

def load_entitlements(
    owner_id: str,
    conn_factory: Callable[[], sqlite3.Connection] = get_db,
) -> EntitlementSet:
    """
    Compute the owner's entitlements.

    Store failures are converted to EntitlementLookupFailed and then fail
    closed: the caller gets an empty set with lookup_failed=True.
    """
    try:
        try:
            conn = conn_factory()
            try:
                subscription = get_active_subscription(conn, owner_id)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise EntitlementLookupFailed(owner_id, e) from e
    except EntitlementLookupFailed as e:
        print(f"[ENTITLEMENTS] Lookup failed, failing closed: owner_id={owner_id}, cause={type(e.cause).__name__}")
        return no_entitlements(owner_id, lookup_failed=True)

    if subscription is None or not subscription.is_active or subscription.plan is None:
        if IS_DEV:
            print(f"[ENTITLEMENTS] No active subscription: owner_id={owner_id}")
        return no_entitlements(owner_id)

    plan = subscription.plan
    entitlements = EntitlementSet(
        owner_id=owner_id,
        plan_name=plan.name,
        features=dict(plan.features),
        limits={
            "max_properties": plan.max_properties,
            "max_rooms_per_property": plan.max_rooms_per_property,
        },
    )
    if IS_DEV:
        print(f"[ENTITLEMENTS] owner_id={owner_id}, plan={plan.name}, "
              f"features={sorted(k for k in BOOLEAN_FEATURES if entitlements.has(k))}")
    return entitlements


def has_feature(
    owner_id: str,
    feature_key: str,
    conn_factory: Callable[[], sqlite3.Connection] = get_db,
) -> bool:
    """
    Boolean feature check (graded features count as "on" above their lowest tier).

    Returns False for unknown features, missing subscriptions and store failures.
    """
    return load_entitlements(owner_id, conn_factory).has(feature_key)


def feature_tier(
    owner_id: str,
    feature_key: str,
    conn_factory: Callable[[], sqlite3.Connection] = get_db,
) -> str:
    """
    Graded feature tier (lowest tier when nothing is active).

    Raises:
        ValueError: feature_key is not a graded feature
    """
    if feature_key not in GRADED_FEATURES:
        raise ValueError(f"'{feature_key}' is not a graded feature")
    return load_entitlements(owner_id, conn_factory).tier(feature_key)


def plan_limit(
    owner_id: str,
    limit_name: str,
    conn_factory: Callable[[], sqlite3.Connection] = get_db,
) -> int:
    """Usage limit from the active plan; 0 when nothing is active."""
    return load_entitlements(owner_id, conn_factory).limit(limit_name)


def require_feature(
    owner_id: str,
    feature_key: str,
    conn_factory: Callable[[], sqlite3.Connection] = get_db,
) -> EntitlementSet:
    """
    Enforce feature access on a write path.

    Example:
        require_feature(owner_id, Feature.MARKETPLACE_LISTING)

    Raises:
        FeatureNotAllowedError: feature not granted by an active plan
    """
    entitlements = load_entitlements(owner_id, conn_factory)
    if not entitlements.has(feature_key):
        print(f"[ENTITLEMENTS] Feature denied: owner_id={owner_id}, feature={feature_key}, "
              f"plan={entitlements.plan_name}")
        raise FeatureNotAllowedError(owner_id, feature_key, entitlements.plan_name)
    return entitlements


def entitlement_summary(
    owner_id: str,
    conn_factory: Callable[[], sqlite3.Connection] = get_db,
) -> Dict[str, Any]:
    """Plan name, boolean features, graded tiers and limits in one dict."""
    return load_entitlements(owner_id, conn_factory).summary()


# ============================================================================
# Back-office subscription management
# ============================================================================

def list_subscriptions(conn: sqlite3.Connection, status: Optional[str] = None) -> list[Dict[str, Any]]:
    query = """
        SELECT s.id, s.user_id, s.plan_id, s.status, s.start_date, s.end_date,
               p.name AS plan_name
        FROM subscriptions s
        LEFT JOIN subscription_plans p ON p.id = s.plan_id
    """
    params: tuple = ()
    if status:
        query += " WHERE s.status = ?"
        params = (status,)
    query += " ORDER BY COALESCE(s.start_date, '') DESC"
    return [dict(row) for row in conn.execute(query, params).fetchall()]


def cancel_subscription(conn: sqlite3.Connection, subscription_id: str) -> bool:
    """
    Cancel an active subscription.

    Takes effect on the next entitlement check; snapshots already rendered
    are not rewritten. Returns False when the subscription is missing or
    no longer active.
    """
    cur = conn.execute(
        "UPDATE subscriptions SET status = ?, end_date = COALESCE(end_date, ?) "
        "WHERE id = ? AND status = ?",
        (
            SubscriptionStatus.cancelled.value,
            datetime.now(timezone.utc).isoformat(),
            subscription_id,
            SubscriptionStatus.active.value,
        ),
    )
    conn.commit()
    cancelled = cur.rowcount > 0
    if cancelled:
        print(f"[ENTITLEMENTS] Subscription cancelled: subscription_id={subscription_id}")
    return cancelled
