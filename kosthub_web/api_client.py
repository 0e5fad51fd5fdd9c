"""
kosthub_web/api_client.py
Centralized API client for all backend requests.

This module ensures:
1. Protected calls carry the Authorization header when signed in
2. A 401 triggers one refresh attempt before the session is dropped
3. Identity checks are bounded: a timeout or unreachable backend counts as
   signed out (recoverable, tokens kept) instead of leaving the page waiting
4. Navigation decisions always come back in the API's response shape, even
   when the backend cannot be reached
"""

from typing import Any, Dict, Literal, MutableMapping, Optional, Tuple

import requests
import streamlit as st

from kosthub.errors import RoleDataIntegrityError
from kosthub.navigation import navigate
from kosthub.schemas import NavigationDecisionResponse
from kosthub.session import IdentitySnapshot
from kosthub_web.auth import get_state, clear_auth, get_auth_header, set_auth, update_tokens
from kosthub_web.config import (
    IS_DEV,
    REQUEST_TIMEOUT_SECONDS,
    SESSION_CHECK_TIMEOUT_SECONDS,
    get_api_base_url,
)


__all__ = [
    "api_request",
    "fetch_identity",
    "fetch_navigation_decision",
    "login",
    "logout",
    "offline_decision",
]

PUBLIC_PATHS = ("/health", "/auth/login", "/auth/refresh")
PUBLIC_PREFIXES = ("/marketplace/",)


def is_public_endpoint(path: str) -> bool:
    """Public endpoints never carry (or need) a Bearer token."""
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def api_request(
    method: Literal["GET", "POST", "PUT", "DELETE"],
    path: str,
    json: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    ss: Optional[MutableMapping[str, Any]] = None,
    _retry: bool = True,
) -> Optional[requests.Response]:
    """
    Make an API request with auth header attachment and error handling.

    Returns:
        The response (any status) or None on connection error / timeout.
        Never raises; user-facing messages go through st.error.
    """
    ss = get_state(ss)
    timeout = timeout or REQUEST_TIMEOUT_SECONDS

    try:
        base_url = get_api_base_url()
    except (RuntimeError, ValueError) as e:
        st.error(f"Configuration error: {e}")
        return None

    headers = {"Accept": "application/json"}
    if not is_public_endpoint(path):
        headers.update(get_auth_header(ss))

    try:
        resp = requests.request(
            method, f"{base_url}{path}", json=json, params=params, headers=headers, timeout=timeout
        )
    except requests.exceptions.Timeout:
        if IS_DEV:
            print(f"[API] Timeout on {method} {path}")
        st.error(f"Request timed out after {timeout:g}s. Please try again.")
        return None
    except requests.exceptions.ConnectionError:
        if IS_DEV:
            print(f"[API] Connection error on {method} {path}")
        st.error(f"Cannot connect to backend at {base_url}. Please check your connection.")
        return None

    if resp.status_code == 401 and _retry and not is_public_endpoint(path):
        if IS_DEV:
            print(f"[API] 401 on {path}, attempting token refresh")
        if _try_refresh_token(ss):
            return api_request(method, path, json=json, params=params, timeout=timeout, ss=ss, _retry=False)
        _handle_session_expired(ss)
        return None

    return resp


def _try_refresh_token(ss: MutableMapping[str, Any]) -> bool:
    """Rotate the token pair. Never logs tokens."""
    session_id = ss.get("session_id")
    refresh_token = ss.get("refresh_token")
    if not session_id or not refresh_token:
        return False

    try:
        resp = requests.post(
            f"{get_api_base_url()}/auth/refresh",
            json={"session_id": session_id, "refresh_token": refresh_token},
            timeout=SESSION_CHECK_TIMEOUT_SECONDS,
        )
    except (requests.exceptions.RequestException, RuntimeError, ValueError) as e:
        if IS_DEV:
            print(f"[API] Token refresh error: {type(e).__name__}")
        return False

    if resp.status_code != 200:
        if IS_DEV:
            print(f"[API] Token refresh failed: HTTP {resp.status_code}")
        return False

    update_tokens(resp.json(), ss)
    if IS_DEV:
        print("[API] Token refresh successful")
    return True


def _handle_session_expired(ss: MutableMapping[str, Any]) -> None:
    st.warning("Your session has expired. Please sign in again.")
    clear_auth(ss)


# ============================================================================
# Identity and navigation
# ============================================================================

def fetch_identity(
    ss: Optional[MutableMapping[str, Any]] = None,
    timeout: Optional[float] = None,
    _retry: bool = True,
) -> IdentitySnapshot:
    """
    Resolve the current identity through GET /session.

    Raises:
        RoleDataIntegrityError: the backend reported an unverifiable role (409)
    """
    ss = get_state(ss)
    timeout = timeout or SESSION_CHECK_TIMEOUT_SECONDS

    try:
        resp = requests.get(
            f"{get_api_base_url()}/session", headers=get_auth_header(ss), timeout=timeout
        )
    except requests.exceptions.Timeout:
        print(f"[AUTH] Session check timed out after {timeout:g}s; treating as signed out")
        return IdentitySnapshot.anonymous(auth_error="timeout")
    except requests.exceptions.ConnectionError:
        print("[AUTH] Session check failed: backend unreachable")
        return IdentitySnapshot.anonymous(auth_error="unreachable")
    except (RuntimeError, ValueError) as e:
        print(f"[AUTH] Session check misconfigured: {e}")
        return IdentitySnapshot.anonymous(auth_error="config_error")

    if resp.status_code == 409:
        user = ss.get("current_user") or {}
        raise RoleDataIntegrityError(user.get("id", "unknown"), None)
    if resp.status_code != 200:
        if IS_DEV:
            print(f"[AUTH] Session check failed: HTTP {resp.status_code}")
        return IdentitySnapshot.anonymous(auth_error="provider_error")

    data = resp.json()
    data.pop("home", None)
    snapshot = IdentitySnapshot(**data)

    # Token rejected (not a provider failure): the session may still be refreshable
    rejected = snapshot.is_authenticated is False and snapshot.auth_error is None
    if rejected and ss.get("auth_token") and _retry:
        if _try_refresh_token(ss):
            return fetch_identity(ss, timeout, _retry=False)
        clear_auth(ss)

    return snapshot


def offline_decision(path: Optional[str], reason: str) -> NavigationDecisionResponse:
    """Decision computed locally for a visitor treated as signed out."""
    return NavigationDecisionResponse.from_result(
        navigate(path, lambda: IdentitySnapshot.anonymous(auth_error=reason))
    )


def fetch_navigation_decision(
    path: Optional[str],
    ss: Optional[MutableMapping[str, Any]] = None,
    timeout: Optional[float] = None,
) -> NavigationDecisionResponse:
    """
    Ask the backend whether the current visitor may open `path`.

    Never raises: an unreachable or slow backend yields the signed-out
    decision, which keeps the requested path as return_to.
    """
    ss = get_state(ss)
    timeout = timeout or SESSION_CHECK_TIMEOUT_SECONDS

    try:
        resp = requests.get(
            f"{get_api_base_url()}/navigation/decide",
            params={"path": path or "/"},
            headers=get_auth_header(ss),
            timeout=timeout,
        )
    except requests.exceptions.Timeout:
        print(f"[NAV] Decision timed out for path={path}; treating as signed out")
        return offline_decision(path, "timeout")
    except requests.exceptions.ConnectionError:
        print(f"[NAV] Backend unreachable for path={path}; treating as signed out")
        return offline_decision(path, "unreachable")
    except (RuntimeError, ValueError) as e:
        print(f"[NAV] Misconfigured backend URL: {e}")
        return offline_decision(path, "config_error")

    if resp.status_code != 200:
        print(f"[NAV] Decision failed: HTTP {resp.status_code} for path={path}")
        return offline_decision(path, "provider_error")

    return NavigationDecisionResponse(**resp.json())


# ============================================================================
# Sign-in / sign-out
# ============================================================================

LOGIN_ERRORS = {
    401: "Invalid email or password.",
    403: "This account has been disabled.",
    409: "Your account role could not be verified. Please contact support.",
}


def login(email: str, password: str, ss: Optional[MutableMapping[str, Any]] = None) -> Tuple[bool, str]:
    """
    Sign in and store the tokens.

    Returns:
        (success, message); message is the role home on success
    """
    ss = get_state(ss)
    resp = api_request("POST", "/auth/login", json={"email": email, "password": password}, ss=ss)
    if resp is None:
        return False, "Cannot reach the server. Please try again."
    if resp.status_code != 200:
        return False, LOGIN_ERRORS.get(resp.status_code, f"Sign-in failed (HTTP {resp.status_code}).")

    data = resp.json()
    set_auth(data, ss)
    return True, (data.get("user") or {}).get("home") or "/"


def logout(ss: Optional[MutableMapping[str, Any]] = None) -> None:
    """Revoke the session server-side (best effort) and clear local state."""
    ss = get_state(ss)
    if ss.get("auth_token"):
        resp = api_request("POST", "/auth/logout", ss=ss, _retry=False)
        if resp is not None and resp.status_code != 200 and IS_DEV:
            print(f"[AUTH] Logout returned HTTP {resp.status_code}")
    clear_auth(ss)
