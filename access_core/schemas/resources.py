"""
Input schemas for the resource engine.

One schema per entity kind serves both create and update: updates are
validated on the merged (current + patch) values, so the same field rules
apply to both paths.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from access_core.models.identity import USER_STATUSES


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS", "*"}


class ResourceIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class DepartmentIn(ResourceIn):
    name: str = Field(min_length=1, max_length=100)
    code: str = Field(min_length=1, max_length=10)
    description: str | None = None

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.upper()


class UserIn(ResourceIn):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=255)
    # Write-only; hashed into `password_hash` before storage.
    password: str | None = Field(default=None, min_length=8, max_length=128)
    department_id: int | None = None
    status: str = "active"
    region: str | None = Field(default=None, max_length=100)
    level: int | None = Field(default=None, ge=0)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.lower()
        if not _EMAIL_RE.match(value):
            raise ValueError("not a valid email address")
        return value

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        if value not in USER_STATUSES:
            raise ValueError(f"must be one of {list(USER_STATUSES)}")
        return value


class RoleIn(ResourceIn):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    grants_all: bool = False


class FeatureCategoryIn(ResourceIn):
    name: str = Field(min_length=1, max_length=100)
    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: str | None = None


class FeatureIn(ResourceIn):
    key: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9_]+(?:[.\-][a-z0-9_]+)*$")
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    category_id: int | None = None


class RoleFeatureIn(ResourceIn):
    role_id: int
    feature_id: int


class UserRoleIn(ResourceIn):
    user_id: int
    role_id: int


class RouteFeatureIn(ResourceIn):
    method: str = "*"
    path: str = Field(min_length=1, max_length=255)
    feature_id: int

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        value = value.upper()
        if value not in _HTTP_METHODS:
            raise ValueError(f"must be one of {sorted(_HTTP_METHODS)}")
        return value

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("must start with '/'")
        return value.rstrip("/") or "/"


class SubjectRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attribute: Literal["id", "department", "region", "level", "status", "roles"]
    operator: Literal["==", "!=", ">", ">=", "<", "<=", "in"]
    value: Any


class PolicyCondition(BaseModel):
    """Fixed condition shape; all present keys must hold."""

    model_config = ConfigDict(extra="forbid")

    resources: list[str] | None = None
    actions: list[str] | None = None
    subject: list[SubjectRule] = Field(default_factory=list)


class PolicyIn(ResourceIn):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    priority: int = 0
    effect: Literal["allow", "deny"]
    condition: PolicyCondition | None = None
    enabled: bool = True
