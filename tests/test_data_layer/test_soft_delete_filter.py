"""
Tests for the ORM-level soft-delete filter and append-only guard.

Uses the db_session fixture: file-backed SQLite per test.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from access_core.db.filters import INCLUDE_DELETED
from access_core.errors import StorageError
from access_core.models import ChangeHistory, Department, PolicyViolation, User

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _seed(db_session):
    live = Department(name="IT", code="IT", created_at=NOW, updated_at=NOW)
    gone = Department(name="Old", code="OLD", created_at=NOW, updated_at=NOW, deleted_at=NOW)
    db_session.add_all([live, gone])
    db_session.flush()
    db_session.add(
        User(
            name="Ann",
            email="ann@example.com",
            password_hash="x",
            department_id=gone.id,
            status="active",
            created_at=NOW,
            updated_at=NOW,
        )
    )
    db_session.commit()
    return live, gone


def test_plain_select_hides_soft_deleted_rows(db_session):
    _seed(db_session)
    names = db_session.scalars(select(Department.name).order_by(Department.id)).all()
    assert names == ["IT"]


def test_include_deleted_option_shows_everything(db_session):
    _seed(db_session)
    stmt = select(Department).order_by(Department.id).execution_options(**{INCLUDE_DELETED: True})
    assert [d.code for d in db_session.scalars(stmt).all()] == ["IT", "OLD"]


def test_filter_applies_to_joined_entities(db_session):
    _seed(db_session)
    rows = db_session.execute(
        select(User.name, Department.name.label("department")).outerjoin(Department, Department.id == User.department_id)
    ).all()
    # The user survives; the soft-deleted department does not join.
    assert [(r.name, r.department) for r in rows] == [("Ann", None)]


def test_change_history_rows_cannot_be_updated(db_session):
    entry = ChangeHistory(table_name="departments", record_id=1, action="create", new_values={"id": 1}, created_at=NOW)
    db_session.add(entry)
    db_session.commit()

    entry.reason = "edited later"
    with pytest.raises(StorageError, match="append-only") as exc_info:
        db_session.commit()
    assert not exc_info.value.transient
    db_session.rollback()


def test_policy_violations_cannot_be_deleted(db_session):
    violation = PolicyViolation(resource="/reports", action="GET", occurred_at=NOW)
    db_session.add(violation)
    db_session.commit()

    db_session.delete(violation)
    with pytest.raises(StorageError, match="append-only"):
        db_session.commit()
    db_session.rollback()
