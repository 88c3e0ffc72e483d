from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from access_core.db import filters as _filters  # noqa: F401  (register SQLAlchemy filters)
from access_core.db.init_db import init_db
from access_core.errors import AccessCoreError
from access_core.logging_config import configure_app_logging
from access_core.routers import auth, health, resources
from access_core.routers.errors import access_error_handler
from access_core.security.config import load_access_config
from access_core.security.credentials import PasswordHasher
from access_core.security.dependencies import enforce_security
from access_core.services.access import AccessControl
from access_core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    session_factory: sessionmaker[Session] | None = None,
    hasher: PasswordHasher | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        cfg = settings or get_settings()
        configure_app_logging(cfg.log_level, sql_echo=cfg.sql_echo)
        logger.info("App startup beginning")

        if engine is None or session_factory is None:
            from access_core.db.session import SessionLocal, engine as default_engine

            bound_engine, factory = default_engine, SessionLocal
        else:
            bound_engine, factory = engine, session_factory

        access_config = load_access_config(cfg.resolved_access_config_path())
        logger.info("Loaded access config: %s", cfg.resolved_access_config_path())

        access = AccessControl(factory, settings=cfg, hasher=hasher, public_rules=access_config.public_rules())
        init_db(bound_engine, access, access_config, cfg)
        logger.info("Database initialized (tables ensured + seed applied)")

        app.state.access_config = access_config
        app.state.access = access

        yield
        # Shutdown (nothing to clean up)

    # Global dependency: every route goes through session + RBAC + policy checks.
    app = FastAPI(dependencies=[Depends(enforce_security)], lifespan=lifespan)
    app.add_exception_handler(AccessCoreError, access_error_handler)

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(resources.router)

    return app


app = create_app()
