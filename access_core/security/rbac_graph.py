"""
RBAC graph snapshot and its copy-on-write cache.

Model: users -> roles -> features -> routes.

Key ideas:
- Load the whole grant/gate graph from storage in one pass.
- Precompute effective features per user (union over roles; `grants_all`
  roles grant every feature).
- Index route patterns by (method, segment count) so a decision only scans
  the few patterns with the right shape.
- Never mutate a snapshot. `RbacGraphCache.rebuild()` builds a new one and
  swaps the reference, so concurrent readers always see a complete graph and
  never wait on a rebuild.

Decisions made against a snapshot never touch storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import re
import threading
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_core.db.errors import storage_error
from access_core.models.access import Feature, Role, RoleFeature, RouteFeature
from access_core.models.identity import Department, User, UserRole

logger = logging.getLogger(__name__)

ANY_METHOD = "*"


# ---- Data structures -----------------------------------------------------------------


@dataclass(frozen=True)
class Subject:
    """Attributes of a user that decisions and policy conditions may read."""

    user_id: int
    status: str
    department: str | None
    region: str | None
    level: int | None
    roles: frozenset[str]

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def attribute(self, name: str) -> Any:
        if name == "id":
            return self.user_id
        return getattr(self, name, None)


@dataclass(frozen=True)
class RoutePattern:
    """`method` + path template; `None` segments are placeholders."""

    method: str
    path: str
    segments: tuple[str | None, ...]
    features: frozenset[str] = frozenset()

    @property
    def placeholders(self) -> int:
        return sum(1 for s in self.segments if s is None)

    @property
    def label(self) -> str:
        return f"{self.method} {self.path}"

    def matches(self, segments: tuple[str, ...]) -> bool:
        if len(segments) != len(self.segments):
            return False
        return all(p is None or p == s for p, s in zip(self.segments, segments))


@dataclass(frozen=True)
class PublicRule:
    path: str
    methods: frozenset[str]


class AmbiguousRouteError(ValueError):
    """Two equally specific patterns match the same request."""


# ---- Helpers -------------------------------------------------------------------------


_PLACEHOLDER_RE = re.compile(r"^(\{[^/]+\}|:[^/]+)$")


def split_path(path: str) -> tuple[str, ...]:
    """
    Split a request path into segments.

    Example:
        /reports/42/  ->  ("reports", "42")
    """

    path = path.split("?", 1)[0]
    return tuple(s for s in path.strip("/").split("/") if s)


def compile_pattern(method: str, path: str, features: Iterable[str] = ()) -> RoutePattern:
    """
    Compile a path template into a RoutePattern.

    Placeholders are `{name}` or `:name` and match exactly one segment:
        /reports/{id}  ->  ("reports", None)
    """

    segments = tuple(None if _PLACEHOLDER_RE.match(s) else s for s in split_path(path))
    return RoutePattern(method=method.upper(), path=path, segments=segments, features=frozenset(features))


def _index_patterns(patterns: Iterable[RoutePattern]) -> dict[tuple[str, int], tuple[RoutePattern, ...]]:
    index: dict[tuple[str, int], list[RoutePattern]] = {}
    for pattern in patterns:
        index.setdefault((pattern.method, len(pattern.segments)), []).append(pattern)
    return {key: tuple(value) for key, value in index.items()}


def _best_match(candidates: list[RoutePattern], method: str, path: str) -> RoutePattern | None:
    """Most specific wins: fewest placeholders, then exact method over `*`."""

    if not candidates:
        return None

    def rank(p: RoutePattern) -> tuple[int, int]:
        return (p.placeholders, 0 if p.method == method else 1)

    ranked = sorted(candidates, key=rank)
    if len(ranked) > 1 and rank(ranked[0]) == rank(ranked[1]):
        raise AmbiguousRouteError(
            f"ambiguous route patterns for {method} {path}: {ranked[0].label!r} vs {ranked[1].label!r}"
        )
    return ranked[0]


# ---- Snapshot ------------------------------------------------------------------------


@dataclass(frozen=True)
class RbacGraph:
    version: int
    built_at: datetime
    subjects: Mapping[int, Subject]
    user_features: Mapping[int, frozenset[str]]
    role_features: Mapping[str, frozenset[str]]
    routes: Mapping[tuple[str, int], tuple[RoutePattern, ...]]
    public_routes: Mapping[tuple[str, int], tuple[RoutePattern, ...]] = field(default_factory=dict)
    # Users holding a `grants_all` role: every feature, including ones not stored yet.
    unrestricted: frozenset[int] = frozenset()

    def subject(self, user_id: int) -> Subject | None:
        return self.subjects.get(user_id)

    def features_for(self, user_id: int) -> frozenset[str]:
        return self.user_features.get(user_id, frozenset())

    def grants(self, user_id: int, required: frozenset[str]) -> frozenset[str]:
        """Required features the user holds (ANY-of: non-empty means granted)."""
        if user_id in self.unrestricted:
            return required
        return self.features_for(user_id) & required

    def _candidates(
        self,
        index: Mapping[tuple[str, int], tuple[RoutePattern, ...]],
        method: str,
        segments: tuple[str, ...],
    ) -> list[RoutePattern]:
        n = len(segments)
        found = [p for p in index.get((method, n), ()) if p.matches(segments)]
        found.extend(p for p in index.get((ANY_METHOD, n), ()) if p.matches(segments))
        return found

    def match_route(self, method: str, path: str) -> RoutePattern | None:
        method = method.upper()
        return _best_match(self._candidates(self.routes, method, split_path(path)), method, path)

    def is_public(self, method: str, path: str) -> bool:
        return bool(self._candidates(self.public_routes, method.upper(), split_path(path)))


def build_rbac_graph(db: Session, public_rules: Iterable[PublicRule] = (), version: int = 1) -> RbacGraph:
    """Read the grant/gate graph from storage and precompute effective features."""

    all_features = frozenset(db.scalars(select(Feature.key)).all())

    roles = db.execute(select(Role.id, Role.name, Role.grants_all)).all()
    role_names = {r.id: r.name for r in roles}
    grants_all_roles = {r.id for r in roles if r.grants_all}

    granted: dict[int, set[str]] = {r.id: set() for r in roles}
    for role_id, key in db.execute(
        select(RoleFeature.role_id, Feature.key).join(Feature, Feature.id == RoleFeature.feature_id)
    ).all():
        granted.setdefault(role_id, set()).add(key)

    role_features: dict[str, frozenset[str]] = {}
    by_role_id: dict[int, frozenset[str]] = {}
    for r in roles:
        features = all_features if r.grants_all else frozenset(granted.get(r.id, ()))
        role_features[r.name] = features
        by_role_id[r.id] = features

    user_role_ids: dict[int, set[int]] = {}
    for user_id, role_id in db.execute(select(UserRole.user_id, UserRole.role_id)).all():
        user_role_ids.setdefault(user_id, set()).add(role_id)

    # Soft-deleted users (and departments) are filtered out by access_core/db/filters.py.
    users = db.execute(
        select(User.id, User.status, User.region, User.level, Department.name.label("department")).outerjoin(
            Department, Department.id == User.department_id
        )
    ).all()

    subjects: dict[int, Subject] = {}
    user_features: dict[int, frozenset[str]] = {}
    unrestricted: set[int] = set()
    for u in users:
        role_ids = user_role_ids.get(u.id, set())
        subjects[u.id] = Subject(
            user_id=u.id,
            status=u.status,
            department=u.department,
            region=u.region,
            level=u.level,
            roles=frozenset(role_names[rid] for rid in role_ids if rid in role_names),
        )
        effective: set[str] = set()
        for rid in role_ids:
            effective.update(by_role_id.get(rid, ()))
        user_features[u.id] = frozenset(effective)
        if role_ids & grants_all_roles:
            unrestricted.add(u.id)

    gates: dict[tuple[str, str], set[str]] = {}
    for method, path, key in db.execute(
        select(RouteFeature.method, RouteFeature.path, Feature.key).join(Feature, Feature.id == RouteFeature.feature_id)
    ).all():
        gates.setdefault(((method or ANY_METHOD).upper(), path), set()).add(key)
    routes = [compile_pattern(method, path, keys) for (method, path), keys in gates.items()]

    public_patterns = [
        compile_pattern(method, rule.path) for rule in public_rules for method in (rule.methods or {ANY_METHOD})
    ]

    return RbacGraph(
        version=version,
        built_at=datetime.now(timezone.utc),
        subjects=subjects,
        user_features=user_features,
        role_features=role_features,
        routes=_index_patterns(routes),
        public_routes=_index_patterns(public_patterns),
        unrestricted=frozenset(unrestricted),
    )


# ---- Cache ---------------------------------------------------------------------------


class RbacGraphCache:
    """
    Holds the current RbacGraph and swaps in rebuilt ones.

    Readers use `snapshot` (one attribute read, no lock). Rebuilds are
    serialized by a lock so the newest rebuild always reflects the latest
    committed grant/gate state.
    """

    def __init__(self, session_factory: Callable[[], Session], public_rules: Iterable[PublicRule] = ()) -> None:
        self._session_factory = session_factory
        self._public_rules = tuple(public_rules)
        self._lock = threading.Lock()
        self._snapshot: RbacGraph | None = None
        self._version = 0

    @property
    def snapshot(self) -> RbacGraph:
        graph = self._snapshot
        if graph is None:
            # Only the first reader (or the first after a failed rebuild) builds.
            try:
                return self.rebuild()
            except SQLAlchemyError as exc:
                raise storage_error(exc) from exc
        return graph

    def rebuild(self) -> RbacGraph:
        with self._lock:
            with self._session_factory() as db:
                graph = build_rbac_graph(db, self._public_rules, version=self._version + 1)
            self._version = graph.version
            self._snapshot = graph
        logger.info(
            "RBAC graph rebuilt version=%s users=%s roles=%s routes=%s",
            graph.version,
            len(graph.subjects),
            len(graph.role_features),
            sum(len(v) for v in graph.routes.values()),
        )
        return graph

    def invalidate(self) -> None:
        """Rebuild after a committed grant/gate change."""
        try:
            self.rebuild()
        except SQLAlchemyError:
            # Drop the stale snapshot; the next reader rebuilds from storage.
            self._snapshot = None
            logger.exception("RBAC graph rebuild failed; snapshot dropped")
