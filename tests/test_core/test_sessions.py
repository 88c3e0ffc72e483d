"""Tests for opaque session tokens: issue, validate, revoke, expire."""

from __future__ import annotations

import pytest

from access_core.errors import AuthorizationError, NotFoundError, SessionExpired, SessionNotFound, SessionRevoked
from access_core.models import AuthSession
from access_core.security.sessions import SessionManager, hash_session_token
from access_core.services.audit import REDACTED


def test_issue_then_validate(access, make_user, settings, session_factory):
    user = make_user()
    issued = access.sessions.issue_session(user["id"])

    assert len(issued.token) >= 43  # 32 random bytes, url-safe base64
    assert (issued.expires_at - issued.issued_at).total_seconds() == settings.session_ttl_seconds
    assert access.sessions.validate_session(issued.token) == user["id"]

    with session_factory() as db:
        row = db.get(AuthSession, issued.session_id)
        # Only the hash is stored.
        assert row.token_hash == hash_session_token(issued.token)
        assert row.token_hash != issued.token


def test_tokens_are_unique(access, make_user):
    user = make_user()
    tokens = {access.sessions.issue_session(user["id"]).token for _ in range(5)}
    assert len(tokens) == 5


def test_unknown_token_is_not_found(access):
    with pytest.raises(SessionNotFound):
        access.sessions.validate_session("no-such-token")
    with pytest.raises(SessionNotFound):
        access.sessions.revoke_session("no-such-token")


def test_revoked_token_never_validates_again(access, make_user, clock):
    user = make_user()
    issued = access.sessions.issue_session(user["id"])

    access.sessions.revoke_session(issued.token)
    # Revoking twice is a no-op.
    access.sessions.revoke_session(issued.token)

    with pytest.raises(SessionRevoked):
        access.sessions.validate_session(issued.token)
    clock.advance(days=30)
    with pytest.raises(SessionRevoked):
        access.sessions.validate_session(issued.token)


def test_session_expires_after_ttl(access, make_user, clock, settings):
    user = make_user()
    issued = access.sessions.issue_session(user["id"])

    clock.advance(seconds=settings.session_ttl_seconds)
    assert access.sessions.validate_session(issued.token) == user["id"]

    clock.advance(seconds=1)
    with pytest.raises(SessionExpired):
        access.sessions.validate_session(issued.token)
    # Revoking an expired session does nothing and does not fail.
    access.sessions.revoke_session(issued.token)
    with pytest.raises(SessionExpired):
        access.sessions.validate_session(issued.token)


def test_issue_and_revoke_are_audited(access, make_user, history):
    user = make_user()
    issued = access.sessions.issue_session(user["id"])
    access.sessions.revoke_session(issued.token, actor_user_id=user["id"])
    access.sessions.revoke_session(issued.token, actor_user_id=user["id"])

    rows = history("sessions", issued.session_id)
    assert [r.action for r in rows] == ["create", "update"]
    assert rows[1].old_values["revoked_at"] is None
    assert rows[1].new_values["revoked_at"] is not None
    assert all(r.actor_user_id == user["id"] for r in rows)
    assert "token" not in rows[0].new_values
    assert rows[0].new_values["token_hash"] == REDACTED
    assert rows[1].old_values["token_hash"] == rows[1].new_values["token_hash"] == REDACTED


def test_revoke_user_sessions(access, make_user):
    user = make_user()
    other = make_user()
    first = access.sessions.issue_session(user["id"])
    second = access.sessions.issue_session(user["id"])
    kept = access.sessions.issue_session(other["id"])
    access.sessions.revoke_session(first.token)

    assert access.sessions.revoke_user_sessions(user["id"]) == 1

    with pytest.raises(SessionRevoked):
        access.sessions.validate_session(second.token)
    assert access.sessions.validate_session(kept.token) == other["id"]


def test_only_active_users_get_sessions(access, make_user):
    suspended = make_user(status="suspended")
    with pytest.raises(AuthorizationError):
        access.sessions.issue_session(suspended["id"])

    gone = make_user()
    access.perform("users", "delete", {"id": gone["id"]}, None)
    with pytest.raises(NotFoundError):
        access.sessions.issue_session(gone["id"])


def test_ttl_must_be_positive(session_factory, clock, access):
    with pytest.raises(ValueError):
        SessionManager(session_factory, clock=clock, history=access.history, ttl_seconds=0)


def test_sessions_are_listed_without_hashes(access, admin):
    access.sessions.issue_session(admin["id"])
    page = access.perform("sessions", "list", {"filters": {"user_id": admin["id"]}}, admin["id"])
    assert page.total == 1
    assert "token_hash" not in page.items[0]


def test_revoke_user_sessions_can_keep_the_current_one(access, make_user):
    user = make_user()
    current = access.sessions.issue_session(user["id"])
    other = access.sessions.issue_session(user["id"])

    assert access.sessions.revoke_user_sessions(user["id"], keep_token=current.token) == 1

    assert access.sessions.validate_session(current.token) == user["id"]
    with pytest.raises(SessionRevoked):
        access.sessions.validate_session(other.token)
