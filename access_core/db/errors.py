from __future__ import annotations

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from access_core.errors import StorageError


def storage_error(exc: SQLAlchemyError) -> StorageError:
    """
    Map a SQLAlchemy failure onto the core's StorageError.

    Operational errors (lost connection, lock timeout, "database is locked")
    and invalidated connections are transient; everything else is permanent.
    """

    transient = isinstance(exc, OperationalError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    )
    kind = "transient" if transient else "permanent"
    return StorageError(f"{kind} storage failure: {type(exc).__name__}", transient=transient)
