from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from access_core.security.rbac_graph import ANY_METHOD, PublicRule, compile_pattern, split_path


class AuthConfig(BaseModel):
    authorization_header: str = "Authorization"
    bearer_prefix: str = "Bearer"


class PublicRuleModel(BaseModel):
    """A route reachable without a session. An empty method list means any method."""

    path: str
    methods: list[str] = Field(default_factory=lambda: ["GET"])

    def normalized_methods(self) -> frozenset[str]:
        return frozenset(m.upper() for m in self.methods)


class SeedDepartment(BaseModel):
    name: str
    code: str
    description: str | None = None


class SeedFeatureCategory(BaseModel):
    name: str
    slug: str
    description: str | None = None


class SeedFeature(BaseModel):
    key: str
    name: str
    description: str | None = None
    category: str | None = None  # feature category slug


class SeedRole(BaseModel):
    name: str
    description: str | None = None
    grants_all: bool = False
    features: list[str] = Field(default_factory=list)  # feature keys


class SeedRouteFeature(BaseModel):
    path: str
    method: str = "*"
    feature: str  # feature key


class SeedPolicy(BaseModel):
    name: str
    description: str | None = None
    priority: int = 0
    effect: str
    condition: dict[str, Any] | None = None
    enabled: bool = True


class SeedConfig(BaseModel):
    departments: list[SeedDepartment] = Field(default_factory=list)
    feature_categories: list[SeedFeatureCategory] = Field(default_factory=list)
    features: list[SeedFeature] = Field(default_factory=list)
    roles: list[SeedRole] = Field(default_factory=list)
    route_features: list[SeedRouteFeature] = Field(default_factory=list)
    policies: list[SeedPolicy] = Field(default_factory=list)
    # Role given to the bootstrap admin from settings.
    admin_role: str | None = None


class AccessConfigModel(BaseModel):
    auth: AuthConfig = Field(default_factory=AuthConfig)
    public: list[PublicRuleModel] = Field(default_factory=list)
    # Routes any valid session may call (logout, whoami); no feature gate.
    session_only: list[PublicRuleModel] = Field(default_factory=list)
    seed: SeedConfig = Field(default_factory=SeedConfig)


class AccessConfig:
    """
    Runtime helper around the validated YAML.
    """

    def __init__(self, model: AccessConfigModel):
        self.model = model
        self._session_only = tuple(
            compile_pattern(method, rule.path)
            for rule in model.session_only
            for method in (rule.normalized_methods() or {ANY_METHOD})
        )

    @property
    def auth(self) -> AuthConfig:
        return self.model.auth

    @property
    def seed(self) -> SeedConfig:
        return self.model.seed

    def public_rules(self) -> tuple[PublicRule, ...]:
        return tuple(PublicRule(path=r.path, methods=r.normalized_methods()) for r in self.model.public)

    def is_session_only(self, method: str, path: str) -> bool:
        segments = split_path(path)
        method = method.upper()
        for rule in self._session_only:
            if rule.matches(segments) and (rule.method == ANY_METHOD or rule.method == method):
                return True
        return False


def load_access_config(path: Path) -> AccessConfig:
    raw_text = path.read_text(encoding="utf-8")
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "security" not in raw:
        raise ValueError(f"Missing top-level 'security' key in config: {path}")

    model = AccessConfigModel.model_validate(raw["security"])
    return AccessConfig(model)
