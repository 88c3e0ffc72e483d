"""
Change history: one immutable row per successful mutation.

`record_change` never opens its own transaction. It adds the row to the
caller's session so the audit entry commits or rolls back together with the
mutation it describes.

Secret columns (password and token hashes) never reach storage in a snapshot.
Their values are replaced with a marker; a changed secret gets a different
marker on the new side so the change itself is still visible.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from access_core.clock import Clock, as_utc
from access_core.models.audit import CHANGE_ACTIONS, ChangeHistory

logger = logging.getLogger(__name__)

REDACTED = "<redacted>"
REDACTED_CHANGED = "<redacted:changed>"


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def snapshot(row: Any) -> dict[str, Any]:
    """JSON-safe copy of every mapped column on `row`."""
    mapper = inspect(row).mapper
    return {attr.key: _json_safe(getattr(row, attr.key)) for attr in mapper.column_attrs}


def redact(
    secret_columns: Iterable[str],
    old_values: dict[str, Any] | None,
    new_values: dict[str, Any] | None,
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    """Copies of both snapshots with every secret column masked."""

    old = dict(old_values) if old_values is not None else None
    new = dict(new_values) if new_values is not None else None
    for name in secret_columns:
        changed = old is not None and new is not None and old.get(name) != new.get(name)
        if old is not None and name in old:
            old[name] = REDACTED
        if new is not None and name in new:
            new[name] = REDACTED_CHANGED if changed else REDACTED
    return old, new


class ChangeHistoryRecorder:
    def __init__(self, clock: Clock, secret_columns: Mapping[str, Iterable[str]] | None = None) -> None:
        self._clock = clock
        # table name -> columns masked in every snapshot of that table
        self._secret_columns = {table: tuple(cols) for table, cols in (secret_columns or {}).items()}

    def record_change(
        self,
        db: Session,
        *,
        actor_user_id: int | None,
        table_name: str,
        record_id: int,
        action: str,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> ChangeHistory:
        if action not in CHANGE_ACTIONS:
            raise ValueError(f"unknown change action {action!r}")

        secrets = self._secret_columns.get(table_name)
        if secrets:
            old_values, new_values = redact(secrets, old_values, new_values)

        entry = ChangeHistory(
            actor_user_id=actor_user_id,
            table_name=table_name,
            record_id=record_id,
            action=action,
            old_values=old_values,
            new_values=new_values,
            reason=reason,
            created_at=self._clock.now(),
        )
        db.add(entry)
        # Flush inside the caller's transaction so a failing audit insert aborts the mutation too.
        db.flush()
        logger.debug(
            "change recorded table=%s record_id=%s action=%s actor=%s",
            table_name,
            record_id,
            action,
            actor_user_id,
        )
        return entry
