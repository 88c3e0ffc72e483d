"""
AccessControl: the single entry point the outer layers talk to.

`authorize(user_id, method, path)` answers route-level questions and
`perform(kind, operation, payload, actor_user_id)` runs a gated, audited
resource operation. Everything else (graph cache, policy engine, session
manager, one ResourceService per kind) is wired here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from access_core.clock import Clock, SystemClock
from access_core.errors import FieldError, ValidationError
from access_core.security.access_log import AccessLogRecorder
from access_core.security.authorizer import Authorizer, Decision
from access_core.security.credentials import BcryptHasher, PasswordHasher
from access_core.security.passwords import PasswordManager
from access_core.security.policy_engine import PolicyEngine, ViolationRecorder
from access_core.security.rbac_graph import PublicRule, RbacGraphCache
from access_core.security.rbac_resolver import RbacResolver
from access_core.security.sessions import SessionManager
from access_core.services.audit import ChangeHistoryRecorder
from access_core.services.registry import build_resource_configs
from access_core.services.resources import OPERATIONS, ResourceConfig, ResourceService
from access_core.settings import Settings

logger = logging.getLogger(__name__)


class AccessControl:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        settings: Settings,
        clock: Clock | None = None,
        hasher: PasswordHasher | None = None,
        public_rules: Iterable[PublicRule] = (),
        configs: Mapping[str, ResourceConfig] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.hasher = hasher or BcryptHasher(rounds=settings.bcrypt_rounds)

        self.graph_cache = RbacGraphCache(session_factory, public_rules)
        self.violations = ViolationRecorder(session_factory, self.clock)
        self.policies = PolicyEngine(session_factory, self.violations)
        self.resolver = RbacResolver(self.graph_cache)
        self.access_log = AccessLogRecorder(session_factory, self.clock)
        self.authorizer = Authorizer(self.resolver, self.policies, self.violations, self.access_log)
        configs = configs or build_resource_configs()
        self.history = ChangeHistoryRecorder(
            self.clock,
            {c.table_name: c.hidden_fields for c in configs.values() if c.hidden_fields},
        )
        self.sessions = SessionManager(
            session_factory,
            clock=self.clock,
            history=self.history,
            ttl_seconds=settings.session_ttl_seconds,
        )
        self.passwords = PasswordManager(
            session_factory,
            hasher=self.hasher,
            clock=self.clock,
            history=self.history,
            sessions=self.sessions,
        )

        self._services: dict[str, ResourceService] = {}
        for kind, config in configs.items():
            self._services[kind] = ResourceService(
                config,
                session_factory,
                gate=self.authorizer.require_feature,
                history=self.history,
                clock=self.clock,
                hasher=self.hasher,
                on_commit=self.invalidate,
                list_default_limit=settings.list_default_limit,
                list_max_limit=settings.list_max_limit,
            )

    @property
    def kinds(self) -> list[str]:
        return sorted(self._services)

    def resource(self, kind: str) -> ResourceService:
        service = self._services.get(kind)
        if service is None:
            raise ValidationError.single("kind", f"unknown resource kind {kind!r}")
        return service

    def authorize(self, user_id: int | None, method: str, path: str) -> Decision:
        return self.authorizer.authorize(user_id, method, path)

    def perform(
        self,
        kind: str,
        operation: str,
        payload: Mapping[str, Any] | None,
        actor_user_id: int | None,
    ) -> Any:
        """
        Run one resource operation.

        Payload shapes:
            create: the entity fields, plus an optional "reason"
            read:   {"id", "include_deleted"?}
            update: {"id", "values", "restore"?, "reason"?}
            delete: {"id", "reason"?}
            list:   {"filters"?, "sort"?, "limit"?, "offset"?, "include_deleted"?}
        """

        service = self.resource(kind)
        if operation not in OPERATIONS:
            raise ValidationError.single("operation", f"unknown operation {operation!r}")
        data = dict(payload or {})

        if operation == "create":
            reason = data.pop("reason", None)
            return service.create(data, actor_user_id, reason=reason)
        if operation == "list":
            return service.list(
                actor_user_id,
                filters=data.get("filters"),
                sort=data.get("sort"),
                limit=data.get("limit"),
                offset=data.get("offset") or 0,
                include_deleted=bool(data.get("include_deleted", False)),
            )

        record_id = _require_id(data)
        if operation == "read":
            return service.read(record_id, actor_user_id, include_deleted=bool(data.get("include_deleted", False)))
        if operation == "update":
            return service.update(
                record_id,
                data.get("values") or {},
                actor_user_id,
                restore=bool(data.get("restore", False)),
                reason=data.get("reason"),
            )
        return service.delete(record_id, actor_user_id, reason=data.get("reason"))

    def invalidate(self, names: Iterable[str]) -> None:
        """Rebuild the snapshots named in `names` ("rbac", "policies")."""
        names = set(names)
        if "rbac" in names:
            self.graph_cache.invalidate()
        if "policies" in names:
            self.policies.invalidate()


def _require_id(data: Mapping[str, Any]) -> int:
    value = data.get("id")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError([FieldError(field="id", message="an integer id is required")])
    return value
