"""
kosthub/test_session.py

Tests for the Session Resolver and its auth-event plumbing.

Tests verify:
1. IdentitySnapshot enforces "role set iff authenticated" and is immutable
2. AuthSubscription teardown is idempotent and scoped
3. JwtIdentityProvider sign-in / refresh / sign-out lifecycle and events
4. Provider failures and timeouts become a recoverable anonymous snapshot
5. Superseded resolutions are dropped (last navigation wins)
"""

import sqlite3
import threading
import time

import pytest
from pydantic import ValidationError

from kosthub.db import init_db
from kosthub.errors import AuthCheckFailed, RoleDataIntegrityError
from kosthub.models import Role
from kosthub.session import (
    AuthEvent,
    AuthEventHub,
    IdentitySnapshot,
    JwtIdentityProvider,
    NavigationSequencer,
    Session,
    SessionResolver,
    SessionWatcher,
)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def conn_factory(tmp_path):
    db_file = tmp_path / "session.db"

    def _connect():
        conn = sqlite3.connect(db_file)
        conn.row_factory = sqlite3.Row
        return conn

    conn = _connect()
    init_db(conn)
    conn.execute("INSERT INTO users (id, email, password_hash) VALUES ('u1', 'u1@test.id', 'x')")
    conn.commit()
    conn.close()
    return _connect


@pytest.fixture
def provider(conn_factory):
    return JwtIdentityProvider(conn_factory=conn_factory, secret_key="test-secret")


class FakeProvider(AuthEventHub):
    """Identity provider double: returns a fixed session or raises."""

    def __init__(self, session=None, error=None, delay=0.0):
        super().__init__()
        self.session = session
        self.error = error
        self.delay = delay
        self.calls = 0

    def get_current_session(self, handle):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.session if handle else None


# ============================================================================
# IdentitySnapshot
# ============================================================================

def test_snapshot_constructors():
    assert IdentitySnapshot.unknown().is_pending
    assert IdentitySnapshot.anonymous().is_authenticated is False
    snap = IdentitySnapshot.signed_in("u1", Role.admin, is_staff_member=True)
    assert snap.effective_role == Role.admin
    assert snap.is_staff_member


def test_snapshot_role_requires_authentication():
    with pytest.raises(ValidationError):
        IdentitySnapshot(is_authenticated=False, effective_role=Role.admin)
    with pytest.raises(ValidationError):
        IdentitySnapshot(is_authenticated=True, user_id="u1")


def test_snapshot_is_frozen():
    snap = IdentitySnapshot.signed_in("u1", Role.tenant)

    with pytest.raises(ValidationError):
        snap.effective_role = Role.superadmin


# ============================================================================
# Subscriptions
# ============================================================================

def test_subscription_receives_events_until_unsubscribed():
    hub = AuthEventHub()
    seen = []

    sub = hub.subscribe(lambda event, session: seen.append(event))
    hub.publish(AuthEvent.SIGNED_IN)
    sub.unsubscribe()
    sub.unsubscribe()  # idempotent
    hub.publish(AuthEvent.SIGNED_OUT)

    assert seen == [AuthEvent.SIGNED_IN]
    assert not sub.active
    assert hub.listener_count == 0


def test_subscription_context_manager_releases_on_error():
    hub = AuthEventHub()

    with pytest.raises(RuntimeError):
        with hub.subscribe(lambda event, session: None):
            assert hub.listener_count == 1
            raise RuntimeError("page crashed")

    assert hub.listener_count == 0


def test_broken_listener_does_not_block_others():
    hub = AuthEventHub()
    seen = []

    def broken(event, session):
        raise ValueError("boom")

    hub.subscribe(broken)
    hub.subscribe(lambda event, session: seen.append(event))
    hub.publish(AuthEvent.TOKEN_REFRESHED)

    assert seen == [AuthEvent.TOKEN_REFRESHED]


# ============================================================================
# JwtIdentityProvider
# ============================================================================

def test_sign_in_issues_verifiable_token(provider):
    events = []
    provider.subscribe(lambda event, session: events.append((event, session.user_id)))

    tokens = provider.sign_in("u1", "u1@test.id")
    session = provider.get_current_session(tokens["access_token"])

    assert session.user_id == "u1"
    assert session.session_id == tokens["session_id"]
    assert events == [(AuthEvent.SIGNED_IN, "u1")]


@pytest.mark.parametrize("handle", [None, "", "not-a-jwt"])
def test_missing_or_invalid_handle_is_no_session(provider, handle):
    assert provider.get_current_session(handle) is None


def test_token_signed_with_other_secret_is_rejected(provider, conn_factory):
    other = JwtIdentityProvider(conn_factory=conn_factory, secret_key="other-secret")
    tokens = other.sign_in("u1", "u1@test.id")

    assert provider.get_current_session(tokens["access_token"]) is None


def test_expired_token_is_no_session(conn_factory):
    provider = JwtIdentityProvider(conn_factory=conn_factory, secret_key="s", access_token_minutes=-1)
    tokens = provider.sign_in("u1", "u1@test.id")

    assert provider.get_current_session(tokens["access_token"]) is None


def test_refresh_rotates_refresh_token(provider):
    events = []
    provider.subscribe(lambda event, session: events.append(event))
    tokens = provider.sign_in("u1", "u1@test.id")

    refreshed = provider.refresh(tokens["session_id"], tokens["refresh_token"])

    assert refreshed["refresh_token"] != tokens["refresh_token"]
    assert provider.get_current_session(refreshed["access_token"]).user_id == "u1"
    # old refresh token no longer works
    assert provider.refresh(tokens["session_id"], tokens["refresh_token"]) is None
    assert events == [AuthEvent.SIGNED_IN, AuthEvent.TOKEN_REFRESHED]


def test_sign_out_revokes_session(provider):
    events = []
    provider.subscribe(lambda event, session: events.append(event))
    tokens = provider.sign_in("u1", "u1@test.id")

    assert provider.sign_out(tokens["session_id"]) is True
    assert provider.sign_out(tokens["session_id"]) is False
    assert provider.get_current_session(tokens["access_token"]) is None
    assert provider.refresh(tokens["session_id"], tokens["refresh_token"]) is None
    assert events == [AuthEvent.SIGNED_IN, AuthEvent.SIGNED_OUT]


def test_session_store_failure_raises_auth_check_failed(tmp_path):
    ok = JwtIdentityProvider(conn_factory=lambda: _file_conn(tmp_path), secret_key="s")
    init_db(_file_conn(tmp_path))
    tokens = ok.sign_in("u1", None)

    def broken():
        raise sqlite3.OperationalError("database is locked")

    failing = JwtIdentityProvider(conn_factory=broken, secret_key="s")
    with pytest.raises(AuthCheckFailed):
        failing.get_current_session(tokens["access_token"])


def _file_conn(tmp_path):
    conn = sqlite3.connect(tmp_path / "store.db")
    conn.row_factory = sqlite3.Row
    return conn


# ============================================================================
# SessionResolver
# ============================================================================

def test_resolve_signed_in_user():
    provider = FakeProvider(session=Session(user_id="u1", email="u1@test.id"))
    resolver = SessionResolver(provider, role_lookup=lambda user_id: (Role.admin, False))

    snap = resolver.resolve("handle")

    assert snap.is_authenticated is True
    assert snap.user_id == "u1"
    assert snap.effective_role == Role.admin
    assert snap.email == "u1@test.id"


def test_resolve_without_session_is_anonymous():
    resolver = SessionResolver(FakeProvider(), role_lookup=lambda user_id: (Role.admin, False))

    snap = resolver.resolve(None)

    assert snap.is_authenticated is False
    assert snap.auth_error is None


def test_resolve_is_repeatable():
    provider = FakeProvider(session=Session(user_id="u1"))
    resolver = SessionResolver(provider, role_lookup=lambda user_id: (Role.tenant, False))

    assert resolver.resolve("h") == resolver.resolve("h")
    assert provider.calls == 2


def test_provider_failure_is_recoverable_anonymous():
    provider = FakeProvider(error=AuthCheckFailed("provider_error"))
    resolver = SessionResolver(provider, role_lookup=lambda user_id: (Role.admin, False))

    snap = resolver.resolve("handle")

    assert snap.is_authenticated is False
    assert snap.auth_error == "provider_error"


def test_role_integrity_error_propagates():
    def corrupt(user_id):
        raise RoleDataIntegrityError(user_id, "root")

    resolver = SessionResolver(FakeProvider(session=Session(user_id="u1")), role_lookup=corrupt)

    with pytest.raises(RoleDataIntegrityError):
        resolver.resolve("handle")


def test_resolve_with_deadline_times_out_as_signed_out():
    provider = FakeProvider(session=Session(user_id="u1"), delay=0.5)
    resolver = SessionResolver(provider, role_lookup=lambda user_id: (Role.admin, False))

    snap = resolver.resolve_with_deadline("handle", timeout=0.05)

    assert snap.is_authenticated is False
    assert snap.auth_error == "timeout"


def test_resolve_with_deadline_returns_fast_result():
    provider = FakeProvider(session=Session(user_id="u1"))
    resolver = SessionResolver(provider, role_lookup=lambda user_id: (Role.superadmin, True))

    snap = resolver.resolve_with_deadline("handle", timeout=2)

    assert snap.effective_role == Role.superadmin
    assert snap.is_staff_member


# ============================================================================
# Last navigation wins
# ============================================================================

def test_sequencer_marks_unknown_while_resolving():
    seq = NavigationSequencer()
    seq.commit(seq.begin(), IdentitySnapshot.anonymous())

    seq.begin()

    assert seq.current.is_pending


def test_sequencer_drops_stale_result():
    seq = NavigationSequencer()
    first = seq.begin()
    second = seq.begin()

    assert seq.commit(second, IdentitySnapshot.signed_in("u1", Role.admin)) is True
    assert seq.commit(first, IdentitySnapshot.anonymous()) is False
    assert seq.current.effective_role == Role.admin


def test_slow_earlier_navigation_cannot_overwrite_newer_one():
    seq = NavigationSequencer()
    release = threading.Event()

    slow_ticket = seq.begin()
    fast_ticket = seq.begin()
    seq.commit(fast_ticket, IdentitySnapshot.signed_in("u1", Role.tenant))

    def late_commit():
        release.wait()
        seq.commit(slow_ticket, IdentitySnapshot.anonymous())

    worker = threading.Thread(target=late_commit)
    worker.start()
    release.set()
    worker.join()

    assert seq.current.effective_role == Role.tenant


def test_watcher_reresolves_on_auth_events_and_unsubscribes():
    hub = AuthEventHub()
    results = iter([
        IdentitySnapshot.anonymous(),
        IdentitySnapshot.signed_in("u1", Role.admin),
    ])
    watcher = SessionWatcher(hub, lambda: next(results))

    with watcher:
        assert watcher.navigate().is_authenticated is False
        hub.publish(AuthEvent.SIGNED_IN, Session(user_id="u1"))
        assert watcher.sequencer.current.effective_role == Role.admin
        assert hub.listener_count == 1

    assert hub.listener_count == 0


def test_event_raised_by_resolution_in_flight_does_not_nest():
    hub = AuthEventHub()
    calls = []

    def resolve():
        calls.append("resolve")
        # a token refresh inside the check announces itself
        hub.publish(AuthEvent.TOKEN_REFRESHED, Session(user_id="u1"))
        return IdentitySnapshot.signed_in("u1", Role.admin)

    with SessionWatcher(hub, resolve) as watcher:
        snapshot = watcher.navigate()

    assert calls == ["resolve"]
    assert snapshot.effective_role == Role.admin
    assert watcher.sequencer.generation == 1


def test_event_after_resolution_still_re_resolves():
    hub = AuthEventHub()
    calls = []

    def resolve():
        calls.append("resolve")
        return IdentitySnapshot.anonymous()

    with SessionWatcher(hub, resolve) as watcher:
        watcher.navigate()
        hub.publish(AuthEvent.SIGNED_OUT, None)

    assert calls == ["resolve", "resolve"]
