"""
Access log: every non-public allow/deny decision, in its own transaction.

Writes are best-effort like policy violations. A storage failure is logged
and the decision still goes back to the caller unchanged.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_core.clock import Clock
from access_core.models.audit import AccessLog

logger = logging.getLogger(__name__)


class AccessLogRecorder:
    def __init__(self, session_factory: Callable[[], Session], clock: Clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def record(
        self,
        *,
        user_id: int | None,
        resource: str,
        action: str,
        allowed: bool,
        reason: str | None = None,
        matched_features: Iterable[str] = (),
        policy_id: int | None = None,
    ) -> None:
        entry = AccessLog(
            user_id=user_id,
            resource=resource[:255],
            action=action[:20],
            decision="allow" if allowed else "deny",
            reason=reason,
            matched_features=sorted(matched_features) or None,
            policy_id=policy_id,
            occurred_at=self._clock.now(),
        )
        try:
            with self._session_factory() as db:
                with db.begin():
                    db.add(entry)
        except SQLAlchemyError:
            logger.exception(
                "access_log_write_failed user=%s resource=%s action=%s decision=%s",
                user_id,
                resource,
                action,
                entry.decision,
            )
