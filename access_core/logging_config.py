from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_app_logging(level: str = "INFO", *, sql_echo: bool = False) -> None:
    """
    Set log levels for the access_core package.

    Notes:
    - Uvicorn installs handlers when serving. Scripts and one-off runs without
      any root handler get a plain stderr handler so decisions stay visible.
    - `APP_LOG_LEVEL=DEBUG` logs every RBAC and policy decision.
    - `APP_SQL_ECHO=true` adds SQLAlchemy statement logging.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(format=LOG_FORMAT)

    logging.getLogger("access_core").setLevel(level.upper())
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)
