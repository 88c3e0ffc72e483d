"""
Opaque session tokens.

Only a SHA-256 hash of each token is stored; the plaintext is returned once by
`issue_session` and cannot be recovered from storage afterwards. Do not log
tokens.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_core.clock import Clock, as_utc
from access_core.db.errors import storage_error
from access_core.errors import AuthorizationError, NotFoundError, SessionExpired, SessionNotFound, SessionRevoked
from access_core.models.identity import AuthSession, User
from access_core.services.audit import ChangeHistoryRecorder, snapshot

logger = logging.getLogger(__name__)

# 32 random bytes -> 256 bits of entropy.
TOKEN_BYTES = 32


def hash_session_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_session_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session_id: int
    user_id: int
    issued_at: datetime
    expires_at: datetime


class SessionManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        clock: Clock,
        history: ChangeHistoryRecorder,
        ttl_seconds: int,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("session TTL must be positive")
        self._session_factory = session_factory
        self._clock = clock
        self._history = history
        self._ttl = timedelta(seconds=ttl_seconds)

    def issue_session(self, user_id: int, *, actor_user_id: int | None = None) -> IssuedSession:
        token = generate_session_token()
        now = self._clock.now()
        try:
            with self._session_factory() as db:
                with db.begin():
                    user = db.scalars(select(User).where(User.id == user_id)).first()
                    if user is None:
                        raise NotFoundError("users", user_id)
                    if user.status != "active":
                        raise AuthorizationError(reason="inactive_user")

                    row = AuthSession(
                        token_hash=hash_session_token(token),
                        user_id=user_id,
                        issued_at=now,
                        expires_at=now + self._ttl,
                    )
                    db.add(row)
                    db.flush()
                    self._history.record_change(
                        db,
                        actor_user_id=actor_user_id if actor_user_id is not None else user_id,
                        table_name=AuthSession.__tablename__,
                        record_id=row.id,
                        action="create",
                        new_values=snapshot(row),
                        reason="session issued",
                    )
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

        logger.info("session issued session_id=%s user=%s", row.id, user_id)
        return IssuedSession(
            token=token,
            session_id=row.id,
            user_id=user_id,
            issued_at=now,
            expires_at=now + self._ttl,
        )

    def validate_session(self, token: str) -> int:
        """Return the bound user id, or raise SessionNotFound/SessionRevoked/SessionExpired."""

        try:
            with self._session_factory() as db:
                row = db.execute(
                    select(AuthSession.user_id, AuthSession.expires_at, AuthSession.revoked_at).where(
                        AuthSession.token_hash == hash_session_token(token)
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

        if row is None:
            raise SessionNotFound()
        if row.revoked_at is not None:
            raise SessionRevoked()
        if self._clock.now() > as_utc(row.expires_at):
            raise SessionExpired()
        return row.user_id

    def revoke_session(self, token: str, *, actor_user_id: int | None = None) -> None:
        """Idempotent: revoking a revoked or expired session does nothing."""

        now = self._clock.now()
        try:
            with self._session_factory() as db:
                with db.begin():
                    row = db.scalars(
                        select(AuthSession).where(AuthSession.token_hash == hash_session_token(token))
                    ).first()
                    if row is None:
                        raise SessionNotFound()
                    if row.revoked_at is not None or now > as_utc(row.expires_at):
                        return
                    self._revoke_row(db, row, now, actor_user_id, reason="session revoked")
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

    def revoke_user_sessions(
        self,
        user_id: int,
        *,
        actor_user_id: int | None = None,
        keep_token: str | None = None,
    ) -> int:
        """Revoke every live session of `user_id` except `keep_token`; returns how many were revoked."""

        now = self._clock.now()
        revoked = 0
        try:
            with self._session_factory() as db:
                with db.begin():
                    rows = db.scalars(
                        select(AuthSession).where(AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None))
                    ).all()
                    kept = hash_session_token(keep_token) if keep_token is not None else None
                    for row in rows:
                        if row.token_hash == kept or now > as_utc(row.expires_at):
                            continue
                        if self._revoke_row(db, row, now, actor_user_id, reason="all sessions revoked"):
                            revoked += 1
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

        logger.info("sessions revoked user=%s count=%s", user_id, revoked)
        return revoked

    def _revoke_row(
        self,
        db: Session,
        row: AuthSession,
        now: datetime,
        actor_user_id: int | None,
        *,
        reason: str,
    ) -> bool:
        old_values = snapshot(row)
        # Conditional update: a concurrent revoke of the same row makes this a no-op.
        result = db.execute(
            update(AuthSession)
            .where(AuthSession.id == row.id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        new_values = dict(old_values, revoked_at=as_utc(now).isoformat())
        self._history.record_change(
            db,
            actor_user_id=actor_user_id if actor_user_id is not None else row.user_id,
            table_name=AuthSession.__tablename__,
            record_id=row.id,
            action="update",
            old_values=old_values,
            new_values=new_values,
            reason=reason,
        )
        logger.info("session revoked session_id=%s user=%s", row.id, row.user_id)
        return True
