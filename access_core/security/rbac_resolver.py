"""
RBAC resolver: (user, method, path) -> route decision.

Algorithm:
1. If (method, path) is public -> allow.
2. Find the most specific route pattern that matches; none -> deny.
3. Allow iff the user's effective features intersect the route's required
   features (ANY-of).

The resolver returns a decision value and has no side effects; callers
record violations and raise.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from access_core.security.rbac_graph import AmbiguousRouteError, RbacGraph, RbacGraphCache, Subject

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteDecision:
    allowed: bool
    reason: str
    subject: Subject | None = None
    route: str | None = None
    required_features: frozenset[str] = frozenset()
    matched_features: frozenset[str] = frozenset()
    public: bool = False


class RbacResolver:
    def __init__(self, cache: RbacGraphCache) -> None:
        self._cache = cache

    @property
    def graph(self) -> RbacGraph:
        return self._cache.snapshot

    def subject(self, user_id: int) -> Subject | None:
        return self.graph.subject(user_id)

    def is_public(self, method: str, path: str) -> bool:
        return self.graph.is_public(method, path)

    def resolve(self, user_id: int | None, method: str, path: str) -> RouteDecision:
        graph = self.graph
        method = method.upper()

        if graph.is_public(method, path):
            return RouteDecision(allowed=True, reason="public", public=True)

        subject = graph.subject(user_id) if user_id is not None else None
        denied = self._check_subject(subject, user_id)
        if denied is not None:
            return denied

        try:
            pattern = graph.match_route(method, path)
        except AmbiguousRouteError:
            logger.exception("RBAC: route configuration is ambiguous; denying")
            return RouteDecision(allowed=False, reason="ambiguous_route", subject=subject)

        if pattern is None:
            # No gate defined -> fail closed.
            logger.debug("RBAC: no matching route user=%s method=%s path=%s", user_id, method, path)
            return RouteDecision(allowed=False, reason="no_route", subject=subject)

        return self._grant(graph, subject, pattern.features, route=pattern.path)

    def check_feature(self, user_id: int, feature_key: str) -> RouteDecision:
        graph = self.graph
        subject = graph.subject(user_id)
        denied = self._check_subject(subject, user_id)
        if denied is not None:
            return denied
        return self._grant(graph, subject, frozenset({feature_key}), route=None)

    def _check_subject(self, subject: Subject | None, user_id: int | None) -> RouteDecision | None:
        if subject is None:
            logger.debug("RBAC: unknown user=%s", user_id)
            return RouteDecision(allowed=False, reason="unknown_user")
        if not subject.is_active:
            logger.debug("RBAC: user=%s status=%s", user_id, subject.status)
            return RouteDecision(allowed=False, reason="inactive_user", subject=subject)
        return None

    def _grant(
        self,
        graph: RbacGraph,
        subject: Subject,
        required: frozenset[str],
        route: str | None,
    ) -> RouteDecision:
        matched = graph.grants(subject.user_id, required)
        if matched:
            logger.debug("RBAC: allowed user=%s route=%s features=%s", subject.user_id, route, sorted(matched))
            return RouteDecision(
                allowed=True,
                reason="granted",
                subject=subject,
                route=route,
                required_features=required,
                matched_features=matched,
            )

        logger.debug(
            "RBAC: denied user=%s route=%s required=%s user_features=%s",
            subject.user_id,
            route,
            sorted(required),
            sorted(graph.features_for(subject.user_id)),
        )
        return RouteDecision(
            allowed=False,
            reason="missing_feature",
            subject=subject,
            route=route,
            required_features=required,
        )
