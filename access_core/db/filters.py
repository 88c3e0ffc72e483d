from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import Session, with_loader_criteria

from access_core.errors import StorageError
from access_core.models.base import AppendOnlyMixin, SoftDeleteMixin

INCLUDE_DELETED = "include_deleted"


@event.listens_for(Session, "do_orm_execute")
def _exclude_soft_deleted(execute_state) -> None:
    """
    Transparent soft-delete scoping.

    Plain queries such as `select(Department)` never return rows with
    `deleted_at` set. Pass `execution_options(include_deleted=True)` on the
    statement to see them (restore, unique pre-checks, audit reads).
    """

    if not execute_state.is_select:
        return
    if execute_state.execution_options.get(INCLUDE_DELETED, False):
        return

    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(SoftDeleteMixin, lambda cls: cls.deleted_at.is_(None), include_aliases=True)
    )


@event.listens_for(Session, "before_flush")
def _reject_append_only_changes(session: Session, _flush_context, _instances) -> None:
    """Audit rows (change history, violations, access logs) are written once and never touched again."""

    for obj in session.dirty:
        if isinstance(obj, AppendOnlyMixin) and session.is_modified(obj):
            raise StorageError(f"{type(obj).__name__} rows are append-only", transient=False)
    for obj in session.deleted:
        if isinstance(obj, AppendOnlyMixin):
            raise StorageError(f"{type(obj).__name__} rows are append-only", transient=False)
