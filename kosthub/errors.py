"""
kosthub/errors.py

Error taxonomy for session, role, entitlement and catalog resolution.

Pure modules raise these; the FastAPI layer translates them into HTTP
responses and the navigation layer translates them into redirects or a
"contact support" outcome. None of them should reach a shell renderer.
"""

from __future__ import annotations

from typing import Optional


class AuthCheckFailed(Exception):
    """
    The identity provider could not be reached (or timed out).

    Recoverable: the visitor is treated as signed out and the check is
    retried on the next navigation.
    """

    def __init__(self, reason: str = "provider_error"):
        super().__init__(f"Authentication check failed: {reason}")
        self.reason = reason


class RoleDataIntegrityError(Exception):
    """
    A staff registry record carries a role outside {superadmin, admin, tenant}.

    Fatal for that user's session. Never coerced to a fallback role.
    """

    def __init__(self, user_id: str, raw_role: Optional[str]):
        super().__init__(
            f"Staff record for user {user_id} has unrecognized role {raw_role!r}"
        )
        self.user_id = user_id
        self.raw_role = raw_role


class EntitlementLookupFailed(Exception):
    """Subscription/plan store unreachable. Callers fail closed."""

    def __init__(self, owner_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Entitlement lookup failed for owner {owner_id}: {cause}")
        self.owner_id = owner_id
        self.cause = cause


class CatalogReadFailed(Exception):
    """A single property's catalog read failed during listing derivation."""

    def __init__(self, property_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Catalog read failed for property {property_id}: {cause}")
        self.property_id = property_id
        self.cause = cause


class FeatureNotAllowedError(Exception):
    """Raised when an owner tries to use a feature not in their active plan."""

    def __init__(self, owner_id: str, feature: str, plan_name: Optional[str] = None):
        plan_label = plan_name or "no active"
        super().__init__(f"Feature '{feature}' not available on {plan_label} plan")
        self.owner_id = owner_id
        self.feature = feature
        self.plan_name = plan_name
