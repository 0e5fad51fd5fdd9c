"""
kosthub/dependencies.py

Reusable FastAPI dependencies for identity, role and entitlement enforcement.

Every request resolves its own IdentitySnapshot from the bearer handle; no
route reads a global "current user". Mapping to HTTP:
- not signed in                 -> 401
- role not allowed              -> 403
- feature not in active plan    -> 402
- staff role integrity error    -> 409 (contact support)
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kosthub.config import IS_DEV
from kosthub.entitlements import EntitlementSet, require_feature
from kosthub.errors import FeatureNotAllowedError, RoleDataIntegrityError
from kosthub.models import Role
from kosthub.session import IdentitySnapshot, JwtIdentityProvider, SessionResolver

# Optional bearer: anonymous callers reach public endpoints and /session
security = HTTPBearer(auto_error=False)

identity_provider = JwtIdentityProvider()
session_resolver = SessionResolver(identity_provider)

CONTACT_SUPPORT_DETAIL = "Your account role could not be verified. Please contact support."


def get_bearer_handle(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    return credentials.credentials if credentials else None


def get_identity(handle: Optional[str] = Depends(get_bearer_handle)) -> IdentitySnapshot:
    """
    Resolve the caller's identity with a bounded wait.

    Provider failures and timeouts yield an anonymous snapshot with
    auth_error set. Role integrity errors surface as 409.
    """
    try:
        return session_resolver.resolve_with_deadline(handle)
    except RoleDataIntegrityError as e:
        print(f"[AUTHZ] Contact support: user_id={e.user_id}")
        raise HTTPException(status_code=409, detail=CONTACT_SUPPORT_DETAIL)


def require_identity(snapshot: IdentitySnapshot = Depends(get_identity)) -> IdentitySnapshot:
    if not snapshot.is_authenticated:
        detail = "Not authenticated"
        if snapshot.auth_error:
            detail = f"Authentication check failed ({snapshot.auth_error}); please retry"
        raise HTTPException(status_code=401, detail=detail)
    return snapshot


def require_role(*roles: Role) -> Callable:
    """
    Dependency factory restricting an endpoint to the given roles.

    Usage:
        @router.get("/plans", dependencies=[Depends(require_role(Role.superadmin))])
    """
    allowed = frozenset(roles)

    def _check_role(snapshot: IdentitySnapshot = Depends(require_identity)) -> IdentitySnapshot:
        if snapshot.effective_role not in allowed:
            if IS_DEV:
                print(f"[AUTHZ] Role denied: user_id={snapshot.user_id}, "
                      f"role={snapshot.effective_role.value}, allowed={sorted(r.value for r in allowed)}")
            raise HTTPException(status_code=403, detail="Insufficient permissions for this area")
        return snapshot

    return _check_role


def enforce_feature(owner_id: str, feature: str) -> EntitlementSet:
    """
    Persistence-side plan gate: UI checks are advisory only.

    Raises:
        HTTPException(402): the feature is not on the owner's active plan
    """
    try:
        return require_feature(owner_id, feature)
    except FeatureNotAllowedError as e:
        raise HTTPException(
            status_code=402,
            detail=f"{e} - upgrade your subscription to use this feature",
        )
