"""Tests for SQLAlchemy -> StorageError translation."""
from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from access_core.db.errors import storage_error
from access_core.errors import StorageError


def _unreachable_database():
    raise OperationalError("SELECT", {}, Exception("unable to open database file"))


def test_operational_errors_are_transient():
    err = storage_error(OperationalError("SELECT 1", {}, Exception("database is locked")))
    assert isinstance(err, StorageError)
    assert err.transient


def test_other_database_errors_are_permanent():
    assert not storage_error(ProgrammingError("SELECT nope", {}, Exception("syntax error"))).transient
    assert not storage_error(IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed"))).transient


def test_cold_rbac_snapshot_rebuild_failure_is_a_storage_error(access, admin, monkeypatch):
    monkeypatch.setattr(access.graph_cache, "_snapshot", None)
    monkeypatch.setattr(access.graph_cache, "_session_factory", _unreachable_database)

    with pytest.raises(StorageError) as exc_info:
        access.perform("departments", "list", {}, admin["id"])
    assert exc_info.value.transient

    with pytest.raises(StorageError):
        access.authorize(admin["id"], "GET", "/reports")


def test_cold_policy_snapshot_reload_failure_is_a_storage_error(access, admin, monkeypatch):
    monkeypatch.setattr(access.policies, "_rules", None)
    monkeypatch.setattr(access.policies, "_session_factory", _unreachable_database)

    with pytest.raises(StorageError) as exc_info:
        access.perform("departments", "list", {}, admin["id"])
    assert exc_info.value.transient


def test_failed_invalidation_recovers_on_next_read(access, admin, session_factory, monkeypatch, caplog):
    monkeypatch.setattr(access.graph_cache, "_session_factory", _unreachable_database)
    access.invalidate({"rbac"})
    assert "snapshot dropped" in caplog.text

    with pytest.raises(StorageError):
        access.perform("departments", "list", {}, admin["id"])

    # Storage is back: the next reader rebuilds.
    monkeypatch.setattr(access.graph_cache, "_session_factory", session_factory)
    assert access.perform("departments", "list", {}, admin["id"]).total == 0
