"""
kosthub/session.py

Session Resolver: turns an opaque authentication handle into an immutable
IdentitySnapshot.

Contains:
- IdentitySnapshot: frozen identity view (authenticated / anonymous / unknown)
- AuthEventHub + AuthSubscription: auth-state change events with scoped,
  idempotent teardown (use as a context manager)
- JwtIdentityProvider: issues and verifies access tokens, tracks sessions
- SessionResolver: provider session + Role Source Aggregator -> snapshot,
  with a bounded-wait variant for stalled checks
- NavigationSequencer / SessionWatcher: last-navigation-wins application of
  resolution results

No component here reads a global "current user". Identity is always passed in
explicitly (handle in, snapshot out).

This module MUST NOT import FastAPI so the web surface can reuse it.
"""

from __future__ import annotations

import hashlib
import secrets
import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import jwt
from pydantic import BaseModel, ConfigDict, model_validator

from kosthub.config import (
    ACCESS_TOKEN_MINUTES,
    ALGORITHM,
    AUTH_CHECK_TIMEOUT_SECONDS,
    IS_DEV,
    REFRESH_TOKEN_DAYS,
    SECRET_KEY,
)
from kosthub.db import get_db, get_db_connection
from kosthub.errors import AuthCheckFailed
from kosthub.models import Role
from kosthub.roles import resolve_role_with_source


# ---------------------------------------------------------
# IdentitySnapshot
# ---------------------------------------------------------
class IdentitySnapshot(BaseModel):
    """
    Immutable identity view for one navigation.

    is_authenticated:
        True  -> signed in, effective_role is set
        False -> signed out, effective_role is None
        None  -> unknown (resolution outstanding); callers must not redirect
    """
    model_config = ConfigDict(frozen=True)

    is_authenticated: Optional[bool] = None
    user_id: Optional[str] = None
    effective_role: Optional[Role] = None
    is_staff_member: bool = False
    email: Optional[str] = None
    auth_error: Optional[str] = None

    @model_validator(mode="after")
    def _role_iff_authenticated(self):
        if (self.effective_role is not None) != (self.is_authenticated is True):
            raise ValueError("effective_role must be set if and only if authenticated")
        return self

    @property
    def is_pending(self) -> bool:
        return self.is_authenticated is None

    @classmethod
    def unknown(cls) -> "IdentitySnapshot":
        return cls(is_authenticated=None)

    @classmethod
    def anonymous(cls, auth_error: Optional[str] = None) -> "IdentitySnapshot":
        return cls(is_authenticated=False, auth_error=auth_error)

    @classmethod
    def signed_in(
        cls,
        user_id: str,
        role: Role,
        is_staff_member: bool = False,
        email: Optional[str] = None,
    ) -> "IdentitySnapshot":
        return cls(
            is_authenticated=True,
            user_id=user_id,
            effective_role=role,
            is_staff_member=is_staff_member,
            email=email,
        )


class Session(BaseModel):
    """A live provider session (decoded from a verified access token)."""
    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = None
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[datetime] = None


# ---------------------------------------------------------
# Auth-state events
# ---------------------------------------------------------
class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


AuthListener = Callable[[AuthEvent, Optional[Session]], None]


class AuthSubscription:
    """
    Handle for one listener registration.

    unsubscribe() is idempotent. Used as a context manager, teardown is
    guaranteed when the scope (request, page run) exits, even on error.
    """

    def __init__(self, hub: "AuthEventHub", listener: AuthListener):
        self._hub = hub
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._hub._remove(self._listener)

    def __enter__(self) -> "AuthSubscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class AuthEventHub:
    """Thread-safe publish/subscribe for auth-state transitions."""

    def __init__(self) -> None:
        self._listeners: List[AuthListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: AuthListener) -> AuthSubscription:
        with self._lock:
            self._listeners.append(listener)
        return AuthSubscription(self, listener)

    def _remove(self, listener: AuthListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def publish(self, event: AuthEvent, session: Optional[Session] = None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, session)
            except Exception as e:
                # One broken listener must not block sign-in/sign-out for the rest
                print(f"[AUTH] Listener error on {event.value}: {type(e).__name__}: {e}")


class IdentityProvider(Protocol):
    """Sole source of is_authenticated / user_id for the Session Resolver."""

    def get_current_session(self, handle: Optional[str]) -> Optional[Session]:
        ...

    def subscribe(self, listener: AuthListener) -> AuthSubscription:
        ...


# ---------------------------------------------------------
# Token Utilities
# ---------------------------------------------------------
def generate_refresh_token() -> str:
    """Generate a high-entropy refresh token (not logged)."""
    return secrets.token_urlsafe(48)


def hash_token(token: str) -> str:
    """Hash a token for secure storage (SHA-256)."""
    return hashlib.sha256(token.encode()).hexdigest()


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def verify_password(password: str, password_hash: str) -> bool:
    return hash_password(password) == password_hash


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JwtIdentityProvider(AuthEventHub):
    """
    Identity provider backed by HS256 access tokens and the auth_sessions table.

    - Expired/invalid/revoked tokens resolve to "no session" (not an error).
    - A failing session store raises AuthCheckFailed (recoverable).
    """

    def __init__(
        self,
        conn_factory: Callable[[], sqlite3.Connection] = get_db,
        secret_key: str = SECRET_KEY,
        algorithm: str = ALGORITHM,
        access_token_minutes: int = ACCESS_TOKEN_MINUTES,
        refresh_token_days: int = REFRESH_TOKEN_DAYS,
    ):
        super().__init__()
        self._conn_factory = conn_factory
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._access_ttl = timedelta(minutes=access_token_minutes)
        self._refresh_ttl = timedelta(days=refresh_token_days)

    def create_access_token(self, user_id: str, email: Optional[str], session_id: str) -> str:
        now = _utcnow()
        payload = {
            "sub": str(user_id),
            "email": email,
            "session_id": session_id,
            "iat": int(now.timestamp()),
            "exp": int((now + self._access_ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def sign_in(self, user_id: str, email: Optional[str]) -> Dict[str, str]:
        """Open a session and return its tokens. Publishes SIGNED_IN."""
        session_id = str(uuid.uuid4())
        refresh_token = generate_refresh_token()
        now = _utcnow()

        conn = self._conn_factory()
        try:
            conn.execute(
                """
                INSERT INTO auth_sessions (id, user_id, refresh_token_hash, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, user_id, hash_token(refresh_token),
                 now.isoformat(), (now + self._refresh_ttl).isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

        access_token = self.create_access_token(user_id, email, session_id)
        print(f"[AUTH] Session created: user_id={user_id}, session_id={session_id}")

        self.publish(
            AuthEvent.SIGNED_IN,
            Session(session_id=session_id, user_id=user_id, email=email,
                    expires_at=now + self._access_ttl),
        )
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "session_id": session_id,
        }

    def get_current_session(self, handle: Optional[str]) -> Optional[Session]:
        if not handle:
            return None

        try:
            payload = jwt.decode(handle, self._secret_key, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            if IS_DEV:
                print("[AUTH] Token expired")
            return None
        except jwt.InvalidTokenError:
            if IS_DEV:
                print("[AUTH] Invalid token")
            return None

        user_id = payload.get("sub")
        if not user_id:
            print("[AUTH] Missing user_id in token payload")
            return None

        session_id = payload.get("session_id")
        if session_id:
            try:
                conn = self._conn_factory()
                try:
                    row = conn.execute(
                        "SELECT revoked_at FROM auth_sessions WHERE id = ?",
                        (session_id,),
                    ).fetchone()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                print(f"[AUTH] Session store unavailable: {type(e).__name__}")
                raise AuthCheckFailed("provider_error") from e

            if not row or row["revoked_at"]:
                if IS_DEV:
                    print(f"[AUTH] Session revoked or unknown: session_id={session_id}")
                return None

        exp = payload.get("exp")
        return Session(
            session_id=session_id,
            user_id=str(user_id),
            email=payload.get("email"),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )

    def refresh(self, session_id: str, refresh_token: str) -> Optional[Dict[str, str]]:
        """
        Rotate the refresh token and mint a new access token.

        Returns None when the session is unknown, revoked, expired or the
        refresh token does not match. Publishes TOKEN_REFRESHED on success.
        """
        conn = self._conn_factory()
        try:
            row = conn.execute(
                """
                SELECT s.user_id, s.refresh_token_hash, s.expires_at, s.revoked_at, u.email
                FROM auth_sessions s
                LEFT JOIN users u ON u.id = s.user_id
                WHERE s.id = ?
                """,
                (session_id,),
            ).fetchone()

            if not row or row["revoked_at"]:
                print(f"[AUTH] Refresh rejected: session unknown or revoked (session_id={session_id})")
                return None
            if row["refresh_token_hash"] != hash_token(refresh_token):
                print(f"[AUTH] Refresh rejected: token mismatch (session_id={session_id})")
                return None
            if datetime.fromisoformat(row["expires_at"]) <= _utcnow():
                print(f"[AUTH] Refresh rejected: session expired (session_id={session_id})")
                return None

            new_refresh_token = generate_refresh_token()
            conn.execute(
                "UPDATE auth_sessions SET refresh_token_hash = ? WHERE id = ?",
                (hash_token(new_refresh_token), session_id),
            )
            conn.commit()
        finally:
            conn.close()

        user_id = row["user_id"]
        email = row["email"]
        access_token = self.create_access_token(user_id, email, session_id)

        self.publish(
            AuthEvent.TOKEN_REFRESHED,
            Session(session_id=session_id, user_id=user_id, email=email),
        )
        return {
            "access_token": access_token,
            "refresh_token": new_refresh_token,
            "session_id": session_id,
        }

    def sign_out(self, session_id: str) -> bool:
        """Revoke a session. Publishes SIGNED_OUT. Returns False if already revoked/unknown."""
        conn = self._conn_factory()
        try:
            cur = conn.execute(
                "UPDATE auth_sessions SET revoked_at = ? WHERE id = ? AND revoked_at IS NULL",
                (_utcnow().isoformat(), session_id),
            )
            conn.commit()
            revoked = cur.rowcount > 0
        finally:
            conn.close()

        if revoked:
            print(f"[AUTH] Session revoked: session_id={session_id}")
            self.publish(AuthEvent.SIGNED_OUT, None)
        return revoked


# ---------------------------------------------------------
# Session Resolver
# ---------------------------------------------------------
RoleLookup = Callable[[str], Tuple[Role, bool]]


def lookup_role_from_store(user_id: str) -> Tuple[Role, bool]:
    """Default role lookup: one connection per call so it is safe on worker threads."""
    try:
        with get_db_connection() as conn:
            return resolve_role_with_source(conn, user_id)
    except sqlite3.Error as e:
        print(f"[AUTH] Role store unavailable: {type(e).__name__}")
        raise AuthCheckFailed("role_lookup_failed") from e


class SessionResolver:
    """
    resolve(handle) -> IdentitySnapshot

    Safe to call repeatedly. Provider failures become an anonymous snapshot
    with auth_error set. RoleDataIntegrityError propagates: it must surface
    as a contact-support state, never as a guessed role.
    """

    def __init__(self, provider: IdentityProvider, role_lookup: RoleLookup = lookup_role_from_store):
        self._provider = provider
        self._role_lookup = role_lookup

    def resolve(self, handle: Optional[str]) -> IdentitySnapshot:
        try:
            session = self._provider.get_current_session(handle)
            if session is None:
                return IdentitySnapshot.anonymous()
            role, is_staff = self._role_lookup(session.user_id)
        except AuthCheckFailed as e:
            print(f"[AUTH] Auth check failed ({e.reason}); treating as signed out")
            return IdentitySnapshot.anonymous(auth_error=e.reason)

        snapshot = IdentitySnapshot.signed_in(
            user_id=session.user_id,
            role=role,
            is_staff_member=is_staff,
            email=session.email,
        )
        if IS_DEV:
            print(f"[AUTH] Resolved: user_id={snapshot.user_id}, role={role.value}, staff={is_staff}")
        return snapshot

    def resolve_with_deadline(
        self,
        handle: Optional[str],
        timeout: float = AUTH_CHECK_TIMEOUT_SECONDS,
    ) -> IdentitySnapshot:
        """
        Bounded-wait resolution. A check still running after `timeout` seconds
        is abandoned and the visitor is treated as signed out (auth_error="timeout").
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="auth-check")
        try:
            future = executor.submit(self.resolve, handle)
            try:
                return future.result(timeout=timeout)
            except FuturesTimeoutError:
                future.cancel()
                print(f"[AUTH] Auth check exceeded {timeout}s; treating as signed out")
                return IdentitySnapshot.anonymous(auth_error="timeout")
        finally:
            executor.shutdown(wait=False)


# ---------------------------------------------------------
# Last-navigation-wins
# ---------------------------------------------------------
class NavigationSequencer:
    """
    Orders overlapping resolutions.

    begin() opens a new generation and marks identity unknown; commit() only
    applies a result whose ticket is still the latest. Results from superseded
    attempts are dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generation = 0
        self._current = IdentitySnapshot.unknown()

    @property
    def current(self) -> IdentitySnapshot:
        with self._lock:
            return self._current

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            self._current = IdentitySnapshot.unknown()
            return self._generation

    def commit(self, ticket: int, snapshot: IdentitySnapshot) -> bool:
        with self._lock:
            if ticket != self._generation:
                if IS_DEV:
                    print(f"[AUTH] Dropping stale resolution: ticket={ticket}, latest={self._generation}")
                return False
            self._current = snapshot
            return True


class SessionWatcher:
    """
    Re-resolves identity on every navigation and every auth-state event.

    Usage:
        with SessionWatcher(provider, resolve_fn, sequencer) as watcher:
            snapshot = watcher.navigate()
            ...
    The provider subscription is released when the block exits. An auth event
    raised by the resolution in flight on the same thread (a token refresh,
    say) does not start a nested resolution.
    """

    def __init__(
        self,
        hub: AuthEventHub,
        resolve: Callable[[], IdentitySnapshot],
        sequencer: Optional[NavigationSequencer] = None,
    ):
        self._hub = hub
        self._resolve = resolve
        self.sequencer = sequencer or NavigationSequencer()
        self._subscription: Optional[AuthSubscription] = None
        self._local = threading.local()

    def navigate(self) -> IdentitySnapshot:
        ticket = self.sequencer.begin()
        self._local.resolving = True
        try:
            snapshot = self._resolve()
        finally:
            self._local.resolving = False
        self.sequencer.commit(ticket, snapshot)
        return self.sequencer.current

    def _on_auth_event(self, event: AuthEvent, session: Optional[Session]) -> None:
        # raised by the in-flight resolution itself (refresh, sign-out); its own result stands
        if getattr(self._local, "resolving", False):
            if IS_DEV:
                print(f"[AUTH] Auth event {event.value} during resolution; not re-resolving")
            return
        if IS_DEV:
            print(f"[AUTH] Auth event {event.value}; re-resolving identity")
        self.navigate()

    def __enter__(self) -> "SessionWatcher":
        self._subscription = self._hub.subscribe(self._on_auth_event)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
