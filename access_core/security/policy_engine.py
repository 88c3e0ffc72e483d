from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access_core.clock import Clock
from access_core.db.errors import storage_error
from access_core.models.access import Policy, PolicyViolation
from access_core.security.rbac_graph import Subject

logger = logging.getLogger(__name__)


POLICY_EFFECT_ALLOW = "allow"
POLICY_EFFECT_DENY = "deny"


@dataclass(frozen=True)
class PolicyRule:
    id: int
    name: str
    priority: int
    effect: str
    condition: Mapping[str, Any] | None


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    effect: str
    policy_id: int | None
    policy_name: str | None
    reason: str


class ViolationRecorder:
    """
    Writes PolicyViolation rows in their own short transaction.

    Best-effort: a failed write is logged and swallowed so it can never turn a
    deny into an allow or stop the deny from reaching the caller.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def record(
        self,
        *,
        user_id: int | None,
        policy_id: int | None,
        resource: str,
        action: str,
        reason: str | None = None,
    ) -> None:
        violation = PolicyViolation(
            user_id=user_id,
            policy_id=policy_id,
            resource=resource[:255],
            action=action[:20],
            reason=reason,
            occurred_at=self._clock.now(),
        )
        try:
            with self._session_factory() as db:
                with db.begin():
                    db.add(violation)
        except SQLAlchemyError:
            logger.exception(
                "policy_violation_write_failed user=%s policy=%s resource=%s action=%s",
                user_id,
                policy_id,
                resource,
                action,
            )
            return
        logger.info(
            "policy violation recorded user=%s policy=%s resource=%s action=%s reason=%s",
            user_id,
            policy_id,
            resource,
            action,
            reason,
        )


# ---- Condition matching --------------------------------------------------------------


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, str):
        # Compact form from seed data: "Jakarta,Surabaya,Bandung".
        return [v.strip() for v in value.split(",") if v.strip()]
    return [value]


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if isinstance(actual, frozenset):
        # Multi-valued attribute (roles): membership semantics.
        expected_set = {str(v) for v in _as_list(expected)}
        if operator in ("==", "in"):
            return bool(actual & expected_set)
        if operator == "!=":
            return not (actual & expected_set)
        return False

    if operator == "in":
        return str(actual) in {str(v) for v in _as_list(expected)}
    if operator == "==":
        return actual == expected or (actual is not None and str(actual) == str(expected))
    if operator == "!=":
        return not _compare(actual, "==", expected)

    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    if operator == ">":
        return left > right
    if operator == ">=":
        return left >= right
    if operator == "<":
        return left < right
    if operator == "<=":
        return left <= right
    return False


def _matches_scope(allowed: Any, value: str) -> bool:
    if allowed is None:
        return True
    names = {str(v).lower() for v in _as_list(allowed)}
    return "*" in names or value.lower() in names


def matches_condition(condition: Mapping[str, Any] | None, subject: Subject, resource: str, action: str) -> bool:
    """
    Evaluate the fixed condition shape: resources, actions, subject rules.

    Every present key must hold; an empty condition matches everything.
    """

    if not condition:
        return True
    if not _matches_scope(condition.get("resources"), resource):
        return False
    if not _matches_scope(condition.get("actions"), action):
        return False
    for rule in condition.get("subject") or []:
        actual = subject.attribute(str(rule.get("attribute")))
        if not _compare(actual, str(rule.get("operator")), rule.get("value")):
            return False
    return True


# ---- Engine --------------------------------------------------------------------------


def load_policy_rules(db: Session) -> tuple[PolicyRule, ...]:
    rows = db.scalars(
        select(Policy)
        .where(Policy.enabled.is_(True))
        .order_by(
            Policy.priority.desc(),
            # Tie-break on id for stable and deterministic ordering.
            Policy.id.asc(),
        )
    ).all()
    return tuple(
        PolicyRule(id=p.id, name=p.name, priority=p.priority, effect=p.effect, condition=p.condition) for p in rows
    )


class PolicyEngine:
    """
    First-match-wins evaluation over policies ordered by priority.

    No matching policy means deny. Every deny writes a PolicyViolation before
    the decision is returned. The rule list is a snapshot swapped whole on
    `reload()`, like the RBAC graph.
    """

    def __init__(self, session_factory: Callable[[], Session], violations: ViolationRecorder) -> None:
        self._session_factory = session_factory
        self._violations = violations
        self._lock = threading.Lock()
        self._rules: tuple[PolicyRule, ...] | None = None

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        rules = self._rules
        if rules is None:
            try:
                return self.reload()
            except SQLAlchemyError as exc:
                raise storage_error(exc) from exc
        return rules

    def reload(self) -> tuple[PolicyRule, ...]:
        with self._lock:
            with self._session_factory() as db:
                rules = load_policy_rules(db)
            self._rules = rules
        logger.info("policies reloaded count=%s", len(rules))
        return rules

    def invalidate(self) -> None:
        try:
            self.reload()
        except SQLAlchemyError:
            self._rules = None
            logger.exception("policy reload failed; snapshot dropped")

    def evaluate(self, subject: Subject, resource: str, action: str) -> PolicyDecision:
        decision = self._decide(subject, resource, action)
        if not decision.allowed:
            self._violations.record(
                user_id=subject.user_id,
                policy_id=decision.policy_id,
                resource=resource,
                action=action,
                reason=decision.reason,
            )
        return decision

    def _decide(self, subject: Subject, resource: str, action: str) -> PolicyDecision:
        for rule in self.rules:
            if not matches_condition(rule.condition, subject, resource, action):
                continue
            allowed = rule.effect == POLICY_EFFECT_ALLOW
            logger.debug(
                "policy matched policy=%s effect=%s user=%s resource=%s action=%s",
                rule.name,
                rule.effect,
                subject.user_id,
                resource,
                action,
            )
            return PolicyDecision(
                allowed=allowed,
                effect=POLICY_EFFECT_ALLOW if allowed else POLICY_EFFECT_DENY,
                policy_id=rule.id,
                policy_name=rule.name,
                reason=f"policy:{rule.name}",
            )

        return PolicyDecision(
            allowed=False,
            effect=POLICY_EFFECT_DENY,
            policy_id=None,
            policy_name=None,
            reason="no_matching_policy",
        )
