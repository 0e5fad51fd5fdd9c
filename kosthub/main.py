# ---------------------------------------------------------
# kosthub/main.py
# KostHub - boarding-house platform backend
#
# Run: uvicorn kosthub.main:app --reload (from repo root)
#
# - FastAPI + SQLite
# - /auth/*               : sign-in, token refresh, sign-out
# - /session              : current IdentitySnapshot
# - /navigation/decide    : route authorization decision + shell
# - /entitlements         : owner plan features
# - /owner/*              : owner marketplace settings (plan-gated)
# - /marketplace/*        : public listings and property details
# - /saved-properties     : a renter's saved (published) properties
# - /backoffice/*         : plans, subscriptions and staff registry (superadmin)
# ---------------------------------------------------------

from __future__ import annotations

import sqlite3
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from kosthub.config import CORS_ORIGINS, IS_DEV, IS_PROD
from kosthub.db import get_db_connection, init_db
from kosthub.dependencies import (
    CONTACT_SUPPORT_DETAIL,
    get_bearer_handle,
    get_identity,
    identity_provider,
    session_resolver,
)
from kosthub.errors import AuthCheckFailed, RoleDataIntegrityError
from kosthub.navigation import home_for, navigate
from kosthub.roles import resolve_role_with_source
from kosthub.routes_backoffice import router as backoffice_router
from kosthub.routes_marketplace import router as marketplace_router, saved_router
from kosthub.routes_owner import entitlements_router, router as owner_router
from kosthub.schemas import (
    LoginRequest,
    NavigationDecisionResponse,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
)
from kosthub.session import IdentitySnapshot, verify_password


# ---------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------
app = FastAPI(title="KostHub Backend", version="0.1")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if IS_PROD else ["*"],  # Restrict origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()

app.include_router(entitlements_router)
app.include_router(owner_router)
app.include_router(marketplace_router)
app.include_router(saved_router)
app.include_router(backoffice_router)


# ---------------------------------------------------------
# Routes
# ---------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/login", response_model=TokenResponse)
def login(req: LoginRequest):
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT id, email, password_hash, is_active FROM users WHERE email = ?",
            (req.email,),
        ).fetchone()

        if not row:
            print("[LOGIN] User not found by email")
            raise HTTPException(status_code=401, detail="Invalid credentials")
        if not verify_password(req.password, row["password_hash"]):
            print(f"[LOGIN] Password rejected: user_id={row['id']}")
            raise HTTPException(status_code=401, detail="Invalid credentials")
        if not row["is_active"]:
            print(f"[LOGIN] Inactive user: user_id={row['id']}")
            raise HTTPException(status_code=403, detail="Account disabled")

        try:
            role, is_staff = resolve_role_with_source(conn, row["id"])
        except RoleDataIntegrityError:
            raise HTTPException(status_code=409, detail=CONTACT_SUPPORT_DETAIL)

    tokens = identity_provider.sign_in(row["id"], row["email"])
    print(f"[LOGIN] Signed in: user_id={row['id']}, role={role.value}")

    return TokenResponse(
        **tokens,
        user={
            "id": row["id"],
            "email": row["email"],
            "role": role.value,
            "is_staff_member": is_staff,
            "home": home_for(role),
        },
    )


@app.post("/auth/refresh")
def refresh_token(req: RefreshRequest):
    tokens = identity_provider.refresh(req.session_id, req.refresh_token)
    if tokens is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return tokens


@app.post("/auth/logout")
def logout(handle: Optional[str] = Depends(get_bearer_handle)):
    try:
        session = identity_provider.get_current_session(handle)
    except AuthCheckFailed:
        raise HTTPException(status_code=503, detail="Authentication service unavailable; please retry")
    if session is None or not session.session_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    identity_provider.sign_out(session.session_id)
    return {"status": "signed_out"}


@app.get("/session", response_model=SessionResponse)
def get_session(snapshot: IdentitySnapshot = Depends(get_identity)):
    """Current identity. Anonymous callers get is_authenticated=false."""
    return SessionResponse(
        **snapshot.model_dump(),
        home=home_for(snapshot.effective_role) if snapshot.effective_role else None,
    )


@app.get("/navigation/decide", response_model=NavigationDecisionResponse)
def decide_navigation(
    path: str = Query("/", max_length=512),
    handle: Optional[str] = Depends(get_bearer_handle),
):
    """
    Route authorization for one navigation.

    Never raises for authorization reasons: signed-out and role-mismatched
    callers get a redirect, integrity errors get contact_support.
    """
    try:
        result = navigate(path, lambda: session_resolver.resolve_with_deadline(handle))
    except sqlite3.Error as e:
        if IS_DEV:
            print(f"[NAV] DB error: {e}")
        raise HTTPException(status_code=500, detail="Database error")

    return NavigationDecisionResponse.from_result(result)
