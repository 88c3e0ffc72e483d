from __future__ import annotations

import logging
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from access_core.errors import (
    AccessCoreError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    SessionError,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def error_status(exc: AccessCoreError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, AuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, SessionError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, StorageError) and exc.transient:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_detail(exc: AccessCoreError) -> Any:
    if isinstance(exc, ValidationError):
        return [{"field": f.field, "message": f.message} for f in exc.fields]
    if isinstance(exc, ConflictError):
        return {"field": exc.field, "message": str(exc)}
    if isinstance(exc, AuthorizationError):
        # Never echo policy internals beyond the id.
        return {"required_feature": exc.required_feature, "policy_id": exc.policy_id, "message": "Forbidden"}
    if isinstance(exc, StorageError):
        return "Storage unavailable" if exc.transient else "Internal Server Error"
    return str(exc)


async def access_error_handler(request: Request, exc: AccessCoreError) -> JSONResponse:
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error("request failed path=%s method=%s error=%s", request.url.path, request.method, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(content={"detail": error_detail(exc)}, status_code=status_code, headers=headers)
