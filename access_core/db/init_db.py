from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine

from access_core import models as _models  # noqa: F401  (register tables on Base.metadata)
from access_core.db.base import Base
from access_core.security.config import AccessConfig
from access_core.services.access import AccessControl
from access_core.settings import Settings

logger = logging.getLogger(__name__)


def init_db(engine: Engine, access: AccessControl, config: AccessConfig, settings: Settings) -> None:
    """
    Create tables and apply the YAML seed.

    Seeding is idempotent: each entry is looked up by its unique key and only
    created when missing. Everything goes through the resource engine with no
    actor, so seed rows get change-history entries like any other write.
    """

    Base.metadata.create_all(bind=engine)
    seed_access_data(access, config)
    if settings.bootstrap_admin_email and settings.bootstrap_admin_password:
        bootstrap_admin(access, config, settings.bootstrap_admin_email, settings.bootstrap_admin_password)


def seed_access_data(access: AccessControl, config: AccessConfig) -> None:
    seed = config.seed

    for d in seed.departments:
        _ensure(access, "departments", {"code": d.code.upper()}, d.model_dump())

    category_ids: dict[str, int] = {}
    for c in seed.feature_categories:
        category_ids[c.slug] = _ensure(access, "feature_categories", {"slug": c.slug}, c.model_dump())

    feature_ids: dict[str, int] = {}
    for f in seed.features:
        values = f.model_dump(exclude={"category"})
        if f.category is not None:
            values["category_id"] = category_ids[f.category]
        feature_ids[f.key] = _ensure(access, "features", {"key": f.key}, values)

    for r in seed.roles:
        role_id = _ensure(access, "roles", {"name": r.name}, r.model_dump(exclude={"features"}))
        for key in r.features:
            link = {"role_id": role_id, "feature_id": feature_ids[key]}
            _ensure(access, "role_features", link, link)

    for rf in seed.route_features:
        gate = {"method": rf.method.upper(), "path": rf.path, "feature_id": feature_ids[rf.feature]}
        _ensure(access, "route_features", gate, gate)

    for p in seed.policies:
        _ensure(access, "policies", {"name": p.name}, p.model_dump())

    logger.info("Access seed applied")


def bootstrap_admin(access: AccessControl, config: AccessConfig, email: str, password: str) -> int:
    email = email.strip().lower()
    user_id = _ensure(
        access,
        "users",
        {"email": email},
        {"name": "Administrator", "email": email, "password": password},
    )
    role_name = config.seed.admin_role
    if role_name:
        role = _find(access, "roles", {"name": role_name})
        if role is None:
            raise ValueError(f"admin_role {role_name!r} is not a seeded role")
        link = {"user_id": user_id, "role_id": role["id"]}
        _ensure(access, "user_roles", link, link)
    logger.info("Bootstrap admin ensured user=%s", user_id)
    return user_id


def _find(access: AccessControl, kind: str, filters: dict[str, Any]) -> dict[str, Any] | None:
    page = access.perform(kind, "list", {"filters": filters, "limit": 1, "include_deleted": True}, None)
    return page.items[0] if page.items else None


def _ensure(access: AccessControl, kind: str, lookup: dict[str, Any], values: dict[str, Any]) -> int:
    existing = _find(access, kind, lookup)
    if existing is not None:
        return existing["id"]
    created = access.perform(kind, "create", {**values, "reason": "seed"}, None)
    logger.debug("Seeded %s id=%s", kind, created["id"])
    return created["id"]
