"""
Typed errors raised by the access core.

The HTTP adapter (`access_core.routers`) turns these into status codes; nothing
inside the core swallows them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class AccessCoreError(Exception):
    """Base error for the access core."""


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class ValidationError(AccessCoreError):
    """Input failed validation. Lists every violated field, not just the first."""

    def __init__(self, fields: list[FieldError]) -> None:
        self.fields = list(fields)
        summary = ", ".join(f"{f.field}: {f.message}" for f in self.fields)
        super().__init__(f"Validation failed ({summary})")

    @classmethod
    def single(cls, field: str, message: str) -> ValidationError:
        return cls([FieldError(field=field, message=message)])


class ConflictError(AccessCoreError):
    """A unique field already holds this value."""

    def __init__(self, field: str, value: Any) -> None:
        self.field = field
        self.value = value
        super().__init__(f"{field}={value!r} already exists")


class NotFoundError(AccessCoreError):
    def __init__(self, entity_kind: str, id: Any) -> None:
        self.entity_kind = entity_kind
        self.id = id
        super().__init__(f"{entity_kind} {id!r} not found")


class AuthorizationError(AccessCoreError):
    """The actor lacks the required feature or a policy denied the action."""

    def __init__(
        self,
        required_feature: str | None = None,
        policy_id: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.required_feature = required_feature
        self.policy_id = policy_id
        self.reason = reason
        if policy_id is not None:
            detail = f"denied by policy {policy_id}"
        elif required_feature:
            detail = f"requires feature {required_feature!r}"
        else:
            detail = reason or "access denied"
        super().__init__(detail)


class SessionError(AccessCoreError):
    """Base class for session token failures. Never carries the token itself."""


class SessionNotFound(SessionError):
    def __init__(self) -> None:
        super().__init__("Invalid session token")


class SessionRevoked(SessionError):
    def __init__(self) -> None:
        super().__init__("Session token revoked")


class SessionExpired(SessionError):
    def __init__(self) -> None:
        super().__init__("Session token expired")


class StorageError(AccessCoreError):
    """Database failure; `transient` errors are safe to retry."""

    def __init__(self, message: str, *, transient: bool) -> None:
        self.transient = transient
        super().__init__(message)
