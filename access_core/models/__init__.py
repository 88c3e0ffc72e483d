from access_core.models.access import Feature, FeatureCategory, Policy, PolicyViolation, Role, RoleFeature, RouteFeature
from access_core.models.audit import AccessLog, ChangeHistory
from access_core.models.identity import AuthSession, Department, User, UserRole

__all__ = [
    "AccessLog",
    "AuthSession",
    "ChangeHistory",
    "Department",
    "Feature",
    "FeatureCategory",
    "Policy",
    "PolicyViolation",
    "Role",
    "RoleFeature",
    "RouteFeature",
    "User",
    "UserRole",
]
