"""
kosthub/routes_backoffice.py

Back-office (platform operator) endpoints: plans, subscriptions and the
staff registry. Superadmin only.

- Plan feature maps are validated strictly on write (unknown keys, non-boolean
  flags and unknown tiers are 422)
- Staff roles are limited to Role values; operators cannot change or revoke
  their own staff record
"""

from __future__ import annotations

import sqlite3
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from kosthub.db import get_db_connection
from kosthub.dependencies import require_identity, require_role
from kosthub.entitlements import (
    cancel_subscription,
    create_plan,
    get_plan,
    list_plans,
    list_subscriptions,
    update_plan,
)
from kosthub.models import Role, SubscriptionPlan, SubscriptionStatus
from kosthub.roles import assign_staff_role, list_staff, revoke_staff_role
from kosthub.schemas import (
    PlanCreate,
    PlanUpdate,
    StaffAssignment,
    StaffMember,
    SubscriptionRow,
)
from kosthub.session import IdentitySnapshot


router = APIRouter(
    prefix="/backoffice",
    tags=["backoffice"],
    dependencies=[Depends(require_role(Role.superadmin))],
)


@router.get("/plans", response_model=List[SubscriptionPlan])
def get_plans():
    with get_db_connection() as conn:
        return list_plans(conn)


@router.get("/subscriptions", response_model=List[SubscriptionRow])
def get_subscriptions(status: Optional[SubscriptionStatus] = Query(None)):
    with get_db_connection() as conn:
        return list_subscriptions(conn, status.value if status else None)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRow)
def post_cancel_subscription(subscription_id: str):
    """
    Cancel an active subscription.

    Owners lose plan features on their next privileged action; nothing
    already rendered is rewritten.
    """
    with get_db_connection() as conn:
        row = conn.execute("SELECT status FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Subscription not found")
        if row["status"] != SubscriptionStatus.active.value:
            raise HTTPException(status_code=409, detail=f"Subscription is already {row['status']}")

        cancel_subscription(conn, subscription_id)
        updated = next(s for s in list_subscriptions(conn) if s["id"] == subscription_id)
    return updated


# ============================================================================
# Plans
# ============================================================================

@router.post("/plans", response_model=SubscriptionPlan, status_code=201)
def post_plan(body: PlanCreate):
    plan = SubscriptionPlan(
        id=body.plan_id(),
        name=body.name,
        description=body.description,
        price=body.price,
        max_properties=body.max_properties,
        max_rooms_per_property=body.max_rooms_per_property,
        features=body.features,
    )
    with get_db_connection() as conn:
        if get_plan(conn, plan.id) is not None:
            raise HTTPException(status_code=409, detail=f"Plan '{plan.id}' already exists")
        try:
            return create_plan(conn, plan)
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail=f"Plan '{plan.id}' already exists")


@router.put("/plans/{plan_id}", response_model=SubscriptionPlan)
def put_plan(plan_id: str, body: PlanUpdate):
    """
    Update a plan's pricing, limits or features.

    Subscribed owners see the new feature map on their next entitlement check.
    """
    changes = body.model_dump(exclude_unset=True)
    nulled = sorted(k for k, v in changes.items() if v is None and k != "description")
    if nulled:
        raise HTTPException(status_code=422, detail=f"Cannot clear required fields: {', '.join(nulled)}")

    with get_db_connection() as conn:
        plan = update_plan(conn, plan_id, changes)
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    return plan


# ============================================================================
# Staff registry
# ============================================================================

@router.get("/staff", response_model=List[StaffMember])
def get_staff():
    with get_db_connection() as conn:
        return list_staff(conn)


@router.put("/staff/{user_id}", response_model=StaffMember)
def put_staff(
    user_id: str,
    body: StaffAssignment,
    snapshot: IdentitySnapshot = Depends(require_identity),
):
    """Assign a staff role. It overrides the account's profile claim from the next resolution."""
    if user_id == snapshot.user_id:
        raise HTTPException(status_code=409, detail="You cannot change your own staff role")

    with get_db_connection() as conn:
        record = assign_staff_role(conn, user_id, body.role, body.name)
    if record is None:
        raise HTTPException(status_code=404, detail="User not found")
    return StaffMember(**record.model_dump())


@router.delete("/staff/{user_id}")
def delete_staff(
    user_id: str,
    snapshot: IdentitySnapshot = Depends(require_identity),
):
    if user_id == snapshot.user_id:
        raise HTTPException(status_code=409, detail="You cannot revoke your own staff role")

    with get_db_connection() as conn:
        revoked = revoke_staff_role(conn, user_id)
    if not revoked:
        raise HTTPException(status_code=404, detail="Staff record not found")
    return {"status": "revoked", "user_id": user_id}
