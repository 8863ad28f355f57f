from datetime import datetime, timedelta, timezone

import pytest

from expenseflow.errors import Unauthorized
from expenseflow.identity import AuthEvent, Identity, SessionIdentityProvider


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def provider(conn, database_path, clock):
    return SessionIdentityProvider(database_path, ttl_seconds=60, clock=clock)


def test_sign_in_issues_token_for_identity(provider):
    token = provider.sign_in("user123", "user123@example.com")

    assert provider.get_identity(token) == Identity("user123", "user123@example.com")
    assert provider.get_identity(None) is None
    assert provider.get_identity("unknown") is None


def test_expired_session_is_dropped(provider, clock):
    token = provider.sign_in("user123", "user123@example.com")

    clock.advance(60)

    assert provider.get_identity(token) is None
    with pytest.raises(Unauthorized):
        provider.refresh(token)


def test_refresh_rotates_token(provider, clock):
    token = provider.sign_in("user123", "user123@example.com")
    clock.advance(30)

    refreshed = provider.refresh(token)
    clock.advance(45)

    assert refreshed != token
    assert provider.get_identity(token) is None
    assert provider.get_identity(refreshed).user_id == "user123"


def test_purge_expired_removes_only_stale_sessions(provider, clock):
    stale = provider.sign_in("user123", "user123@example.com")
    clock.advance(50)
    fresh = provider.sign_in("user456", "user456@example.com")
    clock.advance(20)

    assert provider.purge_expired() == 1
    assert provider.get_identity(stale) is None
    assert provider.get_identity(fresh).user_id == "user456"


def test_subscribers_receive_auth_events(provider):
    token = provider.sign_in("user123", "user123@example.com")
    events = []

    unsubscribe = provider.subscribe(lambda event, who: events.append((event, who)), token=token)
    new_token = provider.refresh(token)
    provider.sign_out(new_token)
    unsubscribe()
    provider.sign_in("user456", "user456@example.com")

    identity = Identity("user123", "user123@example.com")
    assert events == [
        (AuthEvent.INITIAL_SESSION, identity),
        (AuthEvent.TOKEN_REFRESHED, identity),
        (AuthEvent.SIGNED_OUT, None),
    ]


def test_failing_listener_does_not_block_sign_in(provider, caplog):
    def broken(event, identity):
        raise RuntimeError("listener bug")

    provider.subscribe(broken)
    token = provider.sign_in("user123", "user123@example.com")

    assert provider.get_identity(token) is not None
    assert "Auth listener failed" in caplog.text


def test_sign_out_of_unknown_token_is_silent(provider):
    events = []
    provider.subscribe(lambda event, who: events.append(event))

    provider.sign_out("unknown")

    assert events == [AuthEvent.INITIAL_SESSION]
