"""
Joint gate: RBAC resolver first, then the policy engine.

Either deny ends the decision and leaves exactly one PolicyViolation row
(written by the policy engine for policy denies, here for RBAC denies).
Every non-public decision, allowed or not, also lands in the access log.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from access_core.errors import AuthorizationError
from access_core.security.access_log import AccessLogRecorder
from access_core.security.policy_engine import PolicyEngine, ViolationRecorder
from access_core.security.rbac_resolver import RbacResolver, RouteDecision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    matched_features: frozenset[str] = frozenset()
    required_features: frozenset[str] = frozenset()
    matched_policy_id: int | None = None

    @property
    def effect(self) -> str:
        return "allow" if self.allowed else "deny"


class Authorizer:
    def __init__(
        self,
        resolver: RbacResolver,
        policies: PolicyEngine,
        violations: ViolationRecorder,
        access_log: AccessLogRecorder | None = None,
    ) -> None:
        self._resolver = resolver
        self._policies = policies
        self._violations = violations
        self._access_log = access_log

    def authorize(self, user_id: int | None, method: str, path: str) -> Decision:
        """Route-level decision for an inbound request."""

        method = method.upper()
        route = self._resolver.resolve(user_id, method, path)
        if route.public:
            return Decision(allowed=True, reason="public")
        return self._finish(user_id, route, resource=route.route or path, action=method)

    def authorize_feature(self, user_id: int, feature_key: str, resource: str, action: str) -> Decision:
        """Operation-level decision used by the resource engine."""

        route = self._resolver.check_feature(user_id, feature_key)
        return self._finish(user_id, route, resource=resource, action=action)

    def require_feature(self, user_id: int, feature_key: str, resource: str, action: str) -> Decision:
        decision = self.authorize_feature(user_id, feature_key, resource, action)
        if not decision.allowed:
            raise AuthorizationError(
                required_feature=feature_key,
                policy_id=decision.matched_policy_id,
                reason=decision.reason,
            )
        return decision

    def _finish(self, user_id: int | None, route: RouteDecision, *, resource: str, action: str) -> Decision:
        # Unknown and soft-deleted users have no row to reference.
        known_user = route.subject.user_id if route.subject is not None else None

        if not route.allowed:
            reason = route.reason if known_user is not None else f"{route.reason}:{user_id}"
            self._violations.record(
                user_id=known_user,
                policy_id=None,
                resource=resource,
                action=action,
                reason=reason,
            )
            logger.info("access denied user=%s resource=%s action=%s reason=%s", user_id, resource, action, route.reason)
            decision = Decision(allowed=False, reason=route.reason, required_features=route.required_features)
            self._log(known_user, resource, action, decision, reason=reason)
            return decision

        # An allowed route decision always carries its subject.
        policy = self._policies.evaluate(route.subject, resource, action)  # type: ignore[arg-type]
        if not policy.allowed:
            logger.info(
                "access denied by policy user=%s resource=%s action=%s policy=%s",
                user_id,
                resource,
                action,
                policy.policy_name,
            )
        decision = Decision(
            allowed=policy.allowed,
            reason=policy.reason if not policy.allowed else route.reason,
            matched_features=route.matched_features,
            required_features=route.required_features,
            matched_policy_id=policy.policy_id,
        )
        self._log(known_user, resource, action, decision, reason=decision.reason)
        return decision

    def _log(self, user_id: int | None, resource: str, action: str, decision: Decision, *, reason: str) -> None:
        if self._access_log is None:
            return
        self._access_log.record(
            user_id=user_id,
            resource=resource,
            action=action,
            allowed=decision.allowed,
            reason=reason,
            matched_features=decision.matched_features,
            policy_id=decision.matched_policy_id,
        )
