from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from access_core.errors import AuthorizationError
from access_core.security.auth import extract_bearer_token
from access_core.security.config import AccessConfig
from access_core.services.access import AccessControl

logger = logging.getLogger(__name__)


def get_access(request: Request) -> AccessControl:
    access = getattr(request.app.state, "access", None)
    if access is None:
        raise RuntimeError("Access control not initialized. Did app startup run?")
    return access


def get_access_config(request: Request) -> AccessConfig:
    config = getattr(request.app.state, "access_config", None)
    if config is None:
        raise RuntimeError("Access config not loaded. Did app startup run?")
    return config


def get_current_user_id(request: Request) -> int:
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user_id


def get_session_token(request: Request) -> str:
    token = getattr(request.state, "session_token", None)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return token


def enforce_security(
    request: Request,
    access: AccessControl = Depends(get_access),
    config: AccessConfig = Depends(get_access_config),
) -> None:
    """
    Global security dependency.

    1. Public routes pass untouched.
    2. Otherwise the bearer token must name a live session (401).
    3. Session-only routes stop here; all others go through RBAC + policies (403).

    Session and authorization errors propagate as typed errors and are turned
    into responses by `access_core.routers.errors`.
    """

    path = request.url.path
    method = request.method.upper()

    if access.resolver.is_public(method, path):
        return

    token = extract_bearer_token(request, config)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = access.sessions.validate_session(token)
    request.state.user_id = user_id
    request.state.session_token = token

    if config.is_session_only(method, path):
        return

    decision = access.authorize(user_id, method, path)
    if not decision.allowed:
        raise AuthorizationError(
            required_feature=min(decision.required_features) if decision.required_features else None,
            policy_id=decision.matched_policy_id,
            reason=decision.reason,
        )
