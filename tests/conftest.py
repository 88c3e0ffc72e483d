"""
Pytest fixtures for the test suite.

Each test gets its own file-backed SQLite database under `tmp_path`, a manual
clock and a fast bcrypt hasher. Setup writes go through `AccessControl.perform`
with no actor, the same path the startup seed takes.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import itertools

import pytest
from sqlalchemy import select

from access_core.db import filters as _filters  # noqa: F401  (register SQLAlchemy filters)
from access_core.db.base import Base
from access_core.db.session import make_engine, make_session_factory
from access_core.models import AccessLog, ChangeHistory, PolicyViolation
from access_core.security.credentials import BcryptHasher
from access_core.services.access import AccessControl
from access_core.settings import Settings


class ManualClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database file per test (foreign keys on)."""
    engine = make_engine(f"sqlite:///{tmp_path / 'access_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(session_ttl_seconds=3600, bcrypt_rounds=4, list_default_limit=50, list_max_limit=100)


@pytest.fixture
def hasher():
    # Minimum cost keeps the suite fast.
    return BcryptHasher(rounds=4)


@pytest.fixture
def access(session_factory, clock, settings, hasher):
    return AccessControl(session_factory, settings=settings, clock=clock, hasher=hasher)


@pytest.fixture
def baseline_policy(access):
    """Lowest-priority allow-all, as every deployment seeds it."""
    return access.perform("policies", "create", {"name": "baseline-allow", "priority": 0, "effect": "allow"}, None)


@pytest.fixture
def ensure_feature(access):
    def _ensure(key: str) -> dict:
        page = access.perform("features", "list", {"filters": {"key": key}}, None)
        if page.items:
            return page.items[0]
        return access.perform("features", "create", {"key": key, "name": key}, None)

    return _ensure


@pytest.fixture
def make_role(access, ensure_feature):
    def _make(name: str, features=(), *, grants_all: bool = False) -> dict:
        role = access.perform("roles", "create", {"name": name, "grants_all": grants_all}, None)
        for key in features:
            feature = ensure_feature(key)
            access.perform("role_features", "create", {"role_id": role["id"], "feature_id": feature["id"]}, None)
        return role

    return _make


@pytest.fixture
def make_user(access):
    counter = itertools.count(1)

    def _make(*, roles=(), email: str | None = None, password: str = "correct-horse", **fields) -> dict:
        n = next(counter)
        payload = {
            "name": fields.pop("name", f"User {n}"),
            "email": email or f"user{n}@example.com",
            "password": password,
            **fields,
        }
        user = access.perform("users", "create", payload, None)
        for role in roles:
            access.perform("user_roles", "create", {"user_id": user["id"], "role_id": role["id"]}, None)
        return user

    return _make


@pytest.fixture
def gate_route(access, ensure_feature):
    def _gate(method: str, path: str, feature_key: str) -> dict:
        feature = ensure_feature(feature_key)
        return access.perform(
            "route_features", "create", {"method": method, "path": path, "feature_id": feature["id"]}, None
        )

    return _gate


@pytest.fixture
def admin(make_role, make_user, baseline_policy):
    """Active user holding a grants-all role."""
    role = make_role("super_admin", grants_all=True)
    return make_user(roles=[role], name="Admin", email="admin@example.com")


@pytest.fixture
def count_rows(session_factory):
    def _count(model, **where) -> int:
        with session_factory() as db:
            stmt = select(model).execution_options(include_deleted=True)
            for name, value in where.items():
                stmt = stmt.where(getattr(model, name) == value)
            return len(db.scalars(stmt).all())

    return _count


@pytest.fixture
def history(session_factory):
    def _history(table_name: str, record_id: int | None = None) -> list[ChangeHistory]:
        with session_factory() as db:
            stmt = select(ChangeHistory).where(ChangeHistory.table_name == table_name).order_by(ChangeHistory.id)
            if record_id is not None:
                stmt = stmt.where(ChangeHistory.record_id == record_id)
            return list(db.scalars(stmt).all())

    return _history


@pytest.fixture
def violations(session_factory):
    def _violations() -> list[PolicyViolation]:
        with session_factory() as db:
            return list(db.scalars(select(PolicyViolation).order_by(PolicyViolation.id)).all())

    return _violations


@pytest.fixture
def access_logs(session_factory):
    def _access_logs() -> list[AccessLog]:
        with session_factory() as db:
            return list(db.scalars(select(AccessLog).order_by(AccessLog.id)).all())

    return _access_logs


@pytest.fixture
def db_session(session_factory):
    """Plain ORM session on the test database, for data-layer tests."""
    with session_factory() as session:
        yield session
