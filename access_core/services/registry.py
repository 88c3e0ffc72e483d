"""
Per-kind configuration of the resource engine.

Every entity kind is described explicitly here: which schema validates it,
which fields are unique, whether deletes are soft, which features gate it and
which snapshots must be rebuilt after a committed change.
"""

from __future__ import annotations

from access_core.models.access import Feature, FeatureCategory, Policy, PolicyViolation, Role, RoleFeature, RouteFeature
from access_core.models.audit import AccessLog, ChangeHistory
from access_core.models.identity import AuthSession, Department, User, UserRole
from access_core.schemas.resources import (
    DepartmentIn,
    FeatureCategoryIn,
    FeatureIn,
    PolicyIn,
    RoleFeatureIn,
    RoleIn,
    RouteFeatureIn,
    UserIn,
    UserRoleIn,
)
from access_core.services.resources import READ_OPERATIONS, Cascade, ResourceConfig

RBAC = frozenset({"rbac"})
POLICIES = frozenset({"policies"})


def build_resource_configs() -> dict[str, ResourceConfig]:
    configs = [
        ResourceConfig(
            kind="departments",
            model=Department,
            schema=DepartmentIn,
            soft_delete=True,
            unique_fields=(("name",), ("code",)),
            required_feature="departments.manage",
            read_feature="departments.view",
            # Subjects carry the department name.
            invalidates=RBAC,
        ),
        ResourceConfig(
            kind="users",
            model=User,
            schema=UserIn,
            soft_delete=True,
            unique_fields=(("email",),),
            required_feature="users.manage",
            read_feature="users.view",
            references={"department_id": Department},
            invalidates=RBAC,
            hashed_fields={"password": "password_hash"},
            required_on_create=("password",),
            hidden_fields=("password_hash",),
        ),
        ResourceConfig(
            kind="roles",
            model=Role,
            schema=RoleIn,
            soft_delete=False,
            unique_fields=(("name",),),
            required_feature="roles.manage",
            read_feature="roles.view",
            cascades=(Cascade(UserRole, "role_id"), Cascade(RoleFeature, "role_id")),
            invalidates=RBAC,
        ),
        ResourceConfig(
            kind="feature_categories",
            model=FeatureCategory,
            schema=FeatureCategoryIn,
            soft_delete=True,
            unique_fields=(("name",), ("slug",)),
            required_feature="features.manage",
            read_feature="features.view",
        ),
        ResourceConfig(
            kind="features",
            model=Feature,
            schema=FeatureIn,
            soft_delete=False,
            unique_fields=(("key",),),
            required_feature="features.manage",
            read_feature="features.view",
            references={"category_id": FeatureCategory},
            cascades=(Cascade(RoleFeature, "feature_id"), Cascade(RouteFeature, "feature_id")),
            invalidates=RBAC,
        ),
        ResourceConfig(
            kind="role_features",
            model=RoleFeature,
            schema=RoleFeatureIn,
            soft_delete=False,
            unique_fields=(("role_id", "feature_id"),),
            required_feature="roles.manage",
            read_feature="roles.view",
            references={"role_id": Role, "feature_id": Feature},
            invalidates=RBAC,
        ),
        ResourceConfig(
            kind="route_features",
            model=RouteFeature,
            schema=RouteFeatureIn,
            soft_delete=False,
            unique_fields=(("method", "path", "feature_id"),),
            required_feature="features.manage",
            read_feature="features.view",
            references={"feature_id": Feature},
            invalidates=RBAC,
        ),
        ResourceConfig(
            kind="user_roles",
            model=UserRole,
            schema=UserRoleIn,
            soft_delete=False,
            unique_fields=(("user_id", "role_id"),),
            required_feature="users.manage",
            read_feature="users.view",
            references={"user_id": User, "role_id": Role},
            invalidates=RBAC,
        ),
        ResourceConfig(
            kind="policies",
            model=Policy,
            schema=PolicyIn,
            soft_delete=False,
            unique_fields=(("name",),),
            required_feature="policies.manage",
            read_feature="policies.view",
            invalidates=POLICIES,
        ),
        # Read-only views. Rows are written by the session manager, the
        # change-history recorder, the policy engine and the authorizer.
        ResourceConfig(
            kind="sessions",
            model=AuthSession,
            schema=None,
            soft_delete=False,
            read_feature="sessions.view",
            operations=READ_OPERATIONS,
            hidden_fields=("token_hash",),
        ),
        ResourceConfig(
            kind="change_history",
            model=ChangeHistory,
            schema=None,
            soft_delete=False,
            read_feature="audit.view",
            operations=READ_OPERATIONS,
        ),
        ResourceConfig(
            kind="policy_violations",
            model=PolicyViolation,
            schema=None,
            soft_delete=False,
            read_feature="audit.view",
            operations=READ_OPERATIONS,
        ),
        ResourceConfig(
            kind="access_logs",
            model=AccessLog,
            schema=None,
            soft_delete=False,
            read_feature="audit.view",
            operations=READ_OPERATIONS,
        ),
    ]
    return {c.kind: c for c in configs}
