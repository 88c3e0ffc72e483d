"""
Generic CRUD endpoints over every configured resource kind.

Handlers stay thin: they shape the payload and call `AccessControl.perform`
with the authenticated actor. Typed errors become responses in
`access_core.routers.errors`.
"""

from __future__ import annotations

from dataclasses import asdict
import json
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from access_core.errors import ValidationError
from access_core.security.dependencies import get_access, get_current_user_id
from access_core.services.access import AccessControl

router = APIRouter(prefix="/api/v1", tags=["resources"])


@router.get("/{kind}")
def list_resources(
    kind: str,
    sort: str | None = None,
    limit: int | None = None,
    offset: int = 0,
    include_deleted: bool = False,
    filters: str | None = Query(default=None, description='JSON object of equality filters, e.g. {"status": "active"}'),
    access: AccessControl = Depends(get_access),
    actor: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    payload = {
        "filters": _parse_filters(filters),
        "sort": sort,
        "limit": limit,
        "offset": offset,
        "include_deleted": include_deleted,
    }
    return asdict(access.perform(kind, "list", payload, actor))


@router.post("/{kind}", status_code=status.HTTP_201_CREATED)
def create_resource(
    kind: str,
    body: dict[str, Any] = Body(...),
    access: AccessControl = Depends(get_access),
    actor: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    return access.perform(kind, "create", body, actor)


@router.get("/{kind}/{id}")
def read_resource(
    kind: str,
    id: int,
    include_deleted: bool = False,
    access: AccessControl = Depends(get_access),
    actor: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    return access.perform(kind, "read", {"id": id, "include_deleted": include_deleted}, actor)


@router.patch("/{kind}/{id}")
def update_resource(
    kind: str,
    id: int,
    body: dict[str, Any] = Body(...),
    access: AccessControl = Depends(get_access),
    actor: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    values = dict(body)
    reason = values.pop("reason", None)
    return access.perform(kind, "update", {"id": id, "values": values, "reason": reason}, actor)


@router.delete("/{kind}/{id}")
def delete_resource(
    kind: str,
    id: int,
    reason: str | None = None,
    access: AccessControl = Depends(get_access),
    actor: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    return access.perform(kind, "delete", {"id": id, "reason": reason}, actor)


@router.post("/{kind}/{id}/restore")
def restore_resource(
    kind: str,
    id: int,
    access: AccessControl = Depends(get_access),
    actor: int = Depends(get_current_user_id),
) -> dict[str, Any]:
    return access.perform(kind, "update", {"id": id, "values": {}, "restore": True}, actor)


def _parse_filters(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError.single("filters", f"invalid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError.single("filters", "must be a JSON object")
    return parsed
