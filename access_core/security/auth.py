from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status
from sqlalchemy import select

from access_core.models.identity import User
from access_core.security.config import AccessConfig
from access_core.services.access import AccessControl

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request, config: AccessConfig) -> str | None:
    """
    Read the opaque session token from `Authorization: Bearer <token>`.

    Returns None when the header is absent; a malformed header is a 401.
    """

    header_name = config.auth.authorization_header
    bearer_prefix = config.auth.bearer_prefix

    raw = request.headers.get(header_name)
    if not raw:
        logger.info("Missing %s header path=%s method=%s", header_name, request.url.path, request.method)
        return None

    prefix = f"{bearer_prefix} "
    if not raw.startswith(prefix):
        logger.warning("Invalid %s header format path=%s method=%s", header_name, request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid {header_name}. Expected '{bearer_prefix} <token>'.",
        )

    token = raw[len(prefix) :].strip()
    if not token:
        logger.warning("Empty bearer token path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid {header_name}. Missing token after '{bearer_prefix}'.",
        )
    return token


def authenticate(access: AccessControl, email: str, password: str) -> int:
    """
    Verify email + password and return the user id.

    Unknown email, wrong password and non-active users all give the same 401.
    """

    with access.session_factory() as db:
        row = db.execute(
            select(User.id, User.password_hash, User.status).where(User.email == email.strip().lower())
        ).first()

    if row is None or not access.hasher.verify(password, row.password_hash):
        logger.info("Login failed (bad credentials)")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    if row.status != "active":
        logger.info("Login refused user=%s status=%s", row.id, row.status)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    return row.id
