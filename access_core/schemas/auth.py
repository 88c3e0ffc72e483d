from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LoginIn(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class MeOut(BaseModel):
    id: int
    name: str
    email: str
    status: str
    department_id: int | None = None
    region: str | None = None
    level: int | None = None
    roles: list[str] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)


class PasswordChangeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)
    # Log out every other session of the user once the new password is stored.
    revoke_other_sessions: bool = True


class PasswordChangeOut(BaseModel):
    revoked_sessions: int
