"""
kosthub_web/auth.py
Authentication state for the KostHub web surface.

Streamlit reruns the whole script on every interaction, so every auth key
lives in st.session_state and init_auth_state() must run at the top of each
rerun before anything reads them.

Each browser session owns one AuthEventHub and one NavigationSequencer
(kept in session_state). set_auth / update_tokens / clear_auth publish on
the hub, so a SessionWatcher subscribed for the current run re-resolves
identity as soon as the sign-in state changes.

All helpers take an optional `ss` mapping (defaults to st.session_state)
so they can be exercised with a plain dict.
"""

from typing import Any, Dict, MutableMapping, Optional

import streamlit as st

from kosthub.session import AuthEvent, AuthEventHub, NavigationSequencer, Session


def get_state(ss: Optional[MutableMapping[str, Any]] = None) -> MutableMapping[str, Any]:
    return st.session_state if ss is None else ss


def init_auth_state(ss: Optional[MutableMapping[str, Any]] = None) -> None:
    """Ensure auth keys exist. Idempotent; safe on every rerun."""
    ss = get_state(ss)

    ss.setdefault("auth_token", None)
    ss.setdefault("refresh_token", None)
    ss.setdefault("session_id", None)
    ss.setdefault("current_user", None)
    ss.setdefault("is_authenticated", False)

    # Path the visitor asked for before being sent to sign-in
    ss.setdefault("return_to", None)

    ss.setdefault("_auth_hub", AuthEventHub())
    ss.setdefault("_nav_sequencer", NavigationSequencer())

    ss["is_authenticated"] = bool(ss["auth_token"])


def auth_hub(ss: Optional[MutableMapping[str, Any]] = None) -> AuthEventHub:
    return get_state(ss)["_auth_hub"]


def nav_sequencer(ss: Optional[MutableMapping[str, Any]] = None) -> NavigationSequencer:
    return get_state(ss)["_nav_sequencer"]


def _current_session(ss: MutableMapping[str, Any]) -> Optional[Session]:
    user = ss.get("current_user")
    if not isinstance(user, dict) or not user.get("id"):
        return None
    return Session(user_id=user["id"], email=user.get("email"), session_id=ss.get("session_id"))


def set_auth(tokens: Dict[str, Any], ss: Optional[MutableMapping[str, Any]] = None) -> None:
    """
    Store a successful /auth/login response.

    Args:
        tokens: TokenResponse body (access_token, refresh_token, session_id, user)
    """
    ss = get_state(ss)

    ss["auth_token"] = tokens["access_token"]
    ss["refresh_token"] = tokens.get("refresh_token")
    ss["session_id"] = tokens.get("session_id")
    ss["current_user"] = tokens.get("user")
    ss["is_authenticated"] = True

    auth_hub(ss).publish(AuthEvent.SIGNED_IN, _current_session(ss))


def update_tokens(tokens: Dict[str, Any], ss: Optional[MutableMapping[str, Any]] = None) -> None:
    """Store a rotated token pair from /auth/refresh."""
    ss = get_state(ss)

    ss["auth_token"] = tokens["access_token"]
    if tokens.get("refresh_token"):
        ss["refresh_token"] = tokens["refresh_token"]
    ss["is_authenticated"] = True

    auth_hub(ss).publish(AuthEvent.TOKEN_REFRESHED, _current_session(ss))


def clear_auth(ss: Optional[MutableMapping[str, Any]] = None) -> None:
    """Wipe auth state (logout or expiry). return_to is kept."""
    ss = get_state(ss)
    was_signed_in = bool(ss.get("auth_token"))

    ss["auth_token"] = None
    ss["refresh_token"] = None
    ss["session_id"] = None
    ss["current_user"] = None
    ss["is_authenticated"] = False

    if was_signed_in:
        auth_hub(ss).publish(AuthEvent.SIGNED_OUT)


def is_authenticated(ss: Optional[MutableMapping[str, Any]] = None) -> bool:
    return bool(get_state(ss).get("auth_token"))


def get_auth_header(ss: Optional[MutableMapping[str, Any]] = None) -> Dict[str, str]:
    token = get_state(ss).get("auth_token")
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# return_to
# ============================================================================

def is_safe_return_path(path: Optional[str]) -> bool:
    """Only same-site absolute paths; rejects scheme-relative '//host' forms."""
    return bool(path) and path.startswith("/") and not path.startswith("//")


def remember_return_to(path: Optional[str], ss: Optional[MutableMapping[str, Any]] = None) -> None:
    if is_safe_return_path(path):
        get_state(ss)["return_to"] = path


def pop_return_to(ss: Optional[MutableMapping[str, Any]] = None) -> Optional[str]:
    """Consume the stored return path (one use)."""
    ss = get_state(ss)
    path = ss.get("return_to")
    ss["return_to"] = None
    return path if is_safe_return_path(path) else None
