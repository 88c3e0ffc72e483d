"""
Self-service password change.

The caller proves the current password; the new hash and its change-history
row commit together. Other sessions of the user are revoked afterwards so a
leaked token stops working once the password is rotated.
"""

from __future__ import annotations

import logging
from typing import Callable

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_core.clock import Clock
from access_core.db.errors import storage_error
from access_core.errors import AuthorizationError, FieldError, NotFoundError, ValidationError
from access_core.models.identity import User
from access_core.schemas.auth import PasswordChangeIn
from access_core.security.credentials import PasswordHasher
from access_core.security.sessions import SessionManager
from access_core.services.audit import ChangeHistoryRecorder, snapshot
from access_core.services.resources import field_errors

logger = logging.getLogger(__name__)


class PasswordManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        hasher: PasswordHasher,
        clock: Clock,
        history: ChangeHistoryRecorder,
        sessions: SessionManager,
    ) -> None:
        self._session_factory = session_factory
        self._hasher = hasher
        self._clock = clock
        self._history = history
        self._sessions = sessions

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        *,
        revoke_other_sessions: bool = True,
        keep_token: str | None = None,
    ) -> int:
        """
        Replace the user's password after checking the current one.

        Returns how many other sessions were revoked. A wrong current password
        is a ValidationError on `current_password`; nothing is written.
        """

        try:
            body = PasswordChangeIn.model_validate(
                {"current_password": current_password, "new_password": new_password}
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(field_errors(exc)) from exc
        if body.new_password == body.current_password:
            raise ValidationError.single("new_password", "must differ from the current password")

        try:
            with self._session_factory() as db:
                with db.begin():
                    user = db.scalars(select(User).where(User.id == user_id).with_for_update()).first()
                    if user is None:
                        raise NotFoundError("users", user_id)
                    if user.status != "active":
                        raise AuthorizationError(reason="inactive_user")
                    if not self._hasher.verify(body.current_password, user.password_hash):
                        logger.info("password change rejected user=%s reason=bad_current_password", user_id)
                        raise ValidationError([FieldError(field="current_password", message="incorrect password")])

                    old_values = snapshot(user)
                    user.password_hash = self._hasher.hash(body.new_password)
                    user.updated_at = self._clock.now()
                    db.flush()
                    self._history.record_change(
                        db,
                        actor_user_id=user_id,
                        table_name=User.__tablename__,
                        record_id=user_id,
                        action="update",
                        old_values=old_values,
                        new_values=snapshot(user),
                        reason="password changed",
                    )
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

        logger.info("password changed user=%s", user_id)
        if not revoke_other_sessions:
            return 0
        return self._sessions.revoke_user_sessions(user_id, actor_user_id=user_id, keep_token=keep_token)
