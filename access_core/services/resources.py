"""
Generic resource engine.

One `ResourceService` per entity kind, parameterized by an explicit
`ResourceConfig`. Every write:

1. validates the whole input and reports every bad field at once,
2. passes the RBAC + policy gate (denials leave a PolicyViolation),
3. runs mutation and change-history insert inside one `Session.begin()` block.

Unique fields are pre-checked for a friendly error, but the storage unique
constraint is the authority: an `IntegrityError` at flush becomes a
`ConflictError` and nothing from that transaction persists.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import re
from typing import Any, Callable, Iterable, Iterator, Mapping, TypeVar

import pydantic
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from access_core.clock import Clock
from access_core.db.base import Base
from access_core.db.errors import storage_error
from access_core.db.filters import INCLUDE_DELETED
from access_core.errors import ConflictError, FieldError, NotFoundError, StorageError, ValidationError
from access_core.models.base import SoftDeleteMixin, TimestampMixin
from access_core.security.credentials import PasswordHasher
from access_core.services.audit import ChangeHistoryRecorder, snapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATIONS = frozenset({"create", "read", "update", "delete", "list"})
READ_OPERATIONS = frozenset({"read", "list"})

# gate(actor_user_id, feature_key, resource, action); raises AuthorizationError on deny.
Gate = Callable[[int, str, str, str], Any]


@dataclass(frozen=True)
class Cascade:
    """Child rows hard-deleted (and audited) together with their parent."""

    model: type[Base]
    foreign_key: str


@dataclass(frozen=True)
class ResourceConfig:
    kind: str
    model: type[Base]
    schema: type[pydantic.BaseModel] | None
    soft_delete: bool
    unique_fields: tuple[tuple[str, ...], ...] = ()
    required_feature: str | None = None
    read_feature: str | None = None
    references: Mapping[str, type[Base]] = field(default_factory=dict)
    cascades: tuple[Cascade, ...] = ()
    operations: frozenset[str] = OPERATIONS
    invalidates: frozenset[str] = frozenset()
    # Write-only input field -> column that stores its hash.
    hashed_fields: Mapping[str, str] = field(default_factory=dict)
    required_on_create: tuple[str, ...] = ()
    hidden_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.soft_delete and not issubclass(self.model, SoftDeleteMixin):
            raise ValueError(f"{self.kind}: soft_delete requires a deleted_at column")
        if not self.operations <= OPERATIONS:
            raise ValueError(f"{self.kind}: unknown operations {sorted(self.operations - OPERATIONS)}")
        if self.schema is None and not self.operations <= READ_OPERATIONS:
            raise ValueError(f"{self.kind}: write operations need an input schema")

    @property
    def table_name(self) -> str:
        return self.model.__tablename__


@dataclass(frozen=True)
class Page:
    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


def field_errors(exc: pydantic.ValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        errors.append(FieldError(field=loc, message=str(err.get("msg", "invalid"))))
    return errors


_SQLITE_UNIQUE_RE = re.compile(r"UNIQUE constraint failed: ([\w., ]+)")
_PG_UNIQUE_RE = re.compile(r"Key \(([^)]+)\)=")


def _unique_columns_from_message(message: str) -> tuple[str, ...] | None:
    m = _SQLITE_UNIQUE_RE.search(message)
    if m:
        return tuple(part.strip().split(".")[-1] for part in m.group(1).split(","))
    m = _PG_UNIQUE_RE.search(message)
    if m:
        return tuple(part.strip() for part in m.group(1).split(","))
    return None


class ResourceService:
    def __init__(
        self,
        config: ResourceConfig,
        session_factory: Callable[[], Session],
        *,
        gate: Gate,
        history: ChangeHistoryRecorder,
        clock: Clock,
        hasher: PasswordHasher,
        on_commit: Callable[[frozenset[str]], None] | None = None,
        list_default_limit: int = 50,
        list_max_limit: int = 500,
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._gate = gate
        self._history = history
        self._clock = clock
        self._hasher = hasher
        self._on_commit = on_commit
        self._list_default_limit = list_default_limit
        self._list_max_limit = list_max_limit

    # ---- Public operations ------------------------------------------------------------

    def create(self, payload: Mapping[str, Any], actor_user_id: int | None, *, reason: str | None = None) -> dict[str, Any]:
        cfg = self.config
        self._ensure_operation("create")

        with self._reading() as db:
            values = self._validate(db, dict(payload), creating=True)

        self._check_gate(actor_user_id, cfg.required_feature, "create")

        def work(db: Session) -> dict[str, Any]:
            self._raise_on_conflict(db, values, exclude_id=None)
            row = cfg.model(**values)
            self._stamp(row, creating=True)
            db.add(row)
            db.flush()
            new_values = snapshot(row)
            self._history.record_change(
                db,
                actor_user_id=actor_user_id,
                table_name=cfg.table_name,
                record_id=row.id,
                action="create",
                old_values=None,
                new_values=new_values,
                reason=reason,
            )
            return new_values

        created = self._atomic(work, candidate=values)
        logger.info("%s created id=%s actor=%s", cfg.kind, created["id"], actor_user_id)
        self._committed()
        return self._view(created)

    def read(self, id: int, actor_user_id: int | None, *, include_deleted: bool = False) -> dict[str, Any]:
        self._ensure_operation("read")
        self._check_gate(actor_user_id, self.config.read_feature, "read")

        with self._reading() as db:
            row = self._get(db, id, include_deleted=include_deleted)
            return self._view(snapshot(row))

    def list(
        self,
        actor_user_id: int | None,
        *,
        filters: Mapping[str, Any] | None = None,
        sort: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        include_deleted: bool = False,
    ) -> Page:
        cfg = self.config
        self._ensure_operation("list")

        columns = self._column_names()
        errors: list[FieldError] = []
        for name in filters or {}:
            if name not in columns or name in cfg.hidden_fields:
                errors.append(FieldError(field=f"filters.{name}", message="unknown field"))

        descending = bool(sort) and sort.startswith("-")
        sort_name = (sort or "id").lstrip("-")
        if sort_name not in columns or sort_name in cfg.hidden_fields:
            errors.append(FieldError(field="sort", message=f"cannot sort by {sort_name!r}"))

        resolved_limit = self._list_default_limit if limit is None else limit
        if resolved_limit < 1:
            errors.append(FieldError(field="limit", message="must be >= 1"))
        if offset < 0:
            errors.append(FieldError(field="offset", message="must be >= 0"))
        if errors:
            raise ValidationError(errors)
        resolved_limit = min(resolved_limit, self._list_max_limit)

        self._check_gate(actor_user_id, cfg.read_feature, "list")

        model = cfg.model
        conditions = [getattr(model, name) == value for name, value in (filters or {}).items()]
        if cfg.soft_delete and not include_deleted:
            conditions.append(model.deleted_at.is_(None))
        sort_column = getattr(model, sort_name)

        stmt = (
            select(model)
            .where(*conditions)
            .order_by(sort_column.desc() if descending else sort_column.asc(), model.id.asc())
            .limit(resolved_limit)
            .offset(offset)
            .execution_options(**{INCLUDE_DELETED: True})
        )
        count_stmt = (
            select(func.count()).select_from(model).where(*conditions).execution_options(**{INCLUDE_DELETED: True})
        )

        with self._reading() as db:
            items = [self._view(snapshot(row)) for row in db.scalars(stmt).all()]
            total = db.scalar(count_stmt) or 0

        return Page(items=items, total=total, limit=resolved_limit, offset=offset)

    def update(
        self,
        id: int,
        patch: Mapping[str, Any],
        actor_user_id: int | None,
        *,
        restore: bool = False,
        reason: str | None = None,
    ) -> dict[str, Any]:
        cfg = self.config
        self._ensure_operation("update")
        if restore and not cfg.soft_delete:
            raise ValidationError.single("restore", f"{cfg.kind} rows are not soft-deleted")

        with self._reading() as db:
            current = self._get(db, id, include_deleted=restore)
            values = self._validate(db, dict(patch), creating=False, current=current)
            candidate = {**snapshot(current), **values}

        self._check_gate(actor_user_id, cfg.required_feature, "update")

        def work(db: Session) -> dict[str, Any]:
            row = self._get(db, id, include_deleted=restore, for_update=True)
            old_values = snapshot(row)
            self._raise_on_conflict(db, {**old_values, **values}, exclude_id=id)
            for name, value in values.items():
                setattr(row, name, value)
            if restore:
                row.deleted_at = None
            self._stamp(row, creating=False)
            db.flush()
            new_values = snapshot(row)
            self._history.record_change(
                db,
                actor_user_id=actor_user_id,
                table_name=cfg.table_name,
                record_id=id,
                action="update",
                old_values=old_values,
                new_values=new_values,
                reason=reason or ("restored" if restore else None),
            )
            return new_values

        updated = self._atomic(work, candidate=candidate, exclude_id=id)
        logger.info("%s updated id=%s actor=%s restore=%s", cfg.kind, id, actor_user_id, restore)
        self._committed()
        return self._view(updated)

    def delete(self, id: int, actor_user_id: int | None, *, reason: str | None = None) -> dict[str, Any]:
        cfg = self.config
        self._ensure_operation("delete")
        self._check_gate(actor_user_id, cfg.required_feature, "delete")

        def work(db: Session) -> dict[str, Any]:
            row = self._get(db, id, include_deleted=False, for_update=True)
            old_values = snapshot(row)
            if cfg.soft_delete:
                row.deleted_at = self._clock.now()
                self._stamp(row, creating=False)
            else:
                self._delete_children(db, id, actor_user_id)
                db.delete(row)
            db.flush()
            self._history.record_change(
                db,
                actor_user_id=actor_user_id,
                table_name=cfg.table_name,
                record_id=id,
                action="delete",
                old_values=old_values,
                new_values=None,
                reason=reason,
            )
            return old_values

        deleted = self._atomic(work)
        logger.info("%s deleted id=%s actor=%s soft=%s", cfg.kind, id, actor_user_id, cfg.soft_delete)
        self._committed()
        return self._view(deleted)

    # ---- Validation ---------------------------------------------------------------

    def _validate(
        self,
        db: Session,
        payload: dict[str, Any],
        *,
        creating: bool,
        current: Any | None = None,
    ) -> dict[str, Any]:
        """Return column values ready for storage, or raise listing every bad field."""

        cfg = self.config
        schema = cfg.schema
        if schema is None:
            raise ValidationError.single("operation", f"{cfg.kind} is read-only")

        errors: list[FieldError] = []
        if creating:
            merged = payload
            for name in cfg.required_on_create:
                if payload.get(name) is None:
                    errors.append(FieldError(field=name, message="Field required"))
        else:
            current_values = {
                name: getattr(current, name) for name in schema.model_fields if name in self._column_names()
            }
            merged = {**current_values, **payload}

        validated: dict[str, Any] = {}
        try:
            validated = schema.model_validate(merged).model_dump()
        except pydantic.ValidationError as exc:
            errors.extend(field_errors(exc))

        for name, model in cfg.references.items():
            value = validated.get(name)
            if value is None or (not creating and name not in payload):
                continue
            if db.scalar(select(model.id).where(model.id == value)) is None:
                errors.append(FieldError(field=name, message=f"unknown {model.__tablename__} id {value}"))

        if errors:
            raise ValidationError(errors)

        for source, target in cfg.hashed_fields.items():
            plaintext = validated.pop(source, None)
            if plaintext is not None:
                validated[target] = self._hasher.hash(plaintext)

        if not creating:
            # Only touch columns that the patch actually names (plus normalized hashes).
            touched = set(payload) | {cfg.hashed_fields[s] for s in payload if s in cfg.hashed_fields}
            validated = {k: v for k, v in validated.items() if k in touched}
        return validated

    # ---- Uniqueness ---------------------------------------------------------------

    def _find_conflict(
        self,
        db: Session,
        values: Mapping[str, Any],
        exclude_id: int | None,
        only: Iterable[tuple[str, ...]] | None = None,
    ) -> ConflictError | None:
        model = self.config.model
        for fields in only or self.config.unique_fields:
            if any(values.get(f) is None for f in fields):
                continue
            stmt = select(model.id).where(*(getattr(model, f) == values[f] for f in fields))
            if exclude_id is not None:
                stmt = stmt.where(model.id != exclude_id)
            # Soft-deleted rows still hold their unique values in storage.
            stmt = stmt.execution_options(**{INCLUDE_DELETED: True})
            if db.scalar(stmt.limit(1)) is not None:
                value = values[fields[0]] if len(fields) == 1 else tuple(values[f] for f in fields)
                return ConflictError(",".join(fields), value)
        return None

    def _raise_on_conflict(self, db: Session, values: Mapping[str, Any], exclude_id: int | None) -> None:
        conflict = self._find_conflict(db, values, exclude_id)
        if conflict is not None:
            raise conflict

    def _integrity_error(
        self,
        exc: IntegrityError,
        candidate: Mapping[str, Any] | None,
        exclude_id: int | None,
    ) -> Exception:
        message = str(exc.orig) if exc.orig is not None else str(exc)
        columns = _unique_columns_from_message(message)
        is_unique = columns is not None or "unique" in message.lower() or "duplicate" in message.lower()
        if not is_unique or candidate is None:
            logger.warning("%s integrity violation: %s", self.config.kind, message)
            return StorageError(f"integrity violation on {self.config.table_name}", transient=False)

        # The winner of the race has committed by now; look it up to name the field.
        only = [u for u in self.config.unique_fields if columns and set(u) == set(columns)] or None
        try:
            with self._reading() as db:
                conflict = self._find_conflict(db, candidate, exclude_id, only=only)
        except StorageError:
            conflict = None
        if conflict is not None:
            return conflict

        fields = columns or (self.config.unique_fields[0] if self.config.unique_fields else ("unknown",))
        value = candidate.get(fields[0]) if len(fields) == 1 else tuple(candidate.get(f) for f in fields)
        return ConflictError(",".join(fields), value)

    # ---- Internals -----------------------------------------------------------------

    def _atomic(
        self,
        work: Callable[[Session], T],
        *,
        candidate: Mapping[str, Any] | None = None,
        exclude_id: int | None = None,
    ) -> T:
        """Run `work` in one transaction; any exception rolls everything back."""

        try:
            with self._session_factory() as db:
                with db.begin():
                    return work(db)
        except IntegrityError as exc:
            raise self._integrity_error(exc, candidate, exclude_id) from exc
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            raise storage_error(exc) from exc

    def _get(self, db: Session, id: int, *, include_deleted: bool, for_update: bool = False) -> Any:
        model = self.config.model
        stmt = select(model).where(model.id == id).execution_options(**{INCLUDE_DELETED: True})
        if for_update:
            stmt = stmt.with_for_update()
        row = db.scalars(stmt).first()
        if row is None:
            raise NotFoundError(self.config.kind, id)
        if self.config.soft_delete and row.deleted_at is not None and not include_deleted:
            raise NotFoundError(self.config.kind, id)
        return row

    def _delete_children(self, db: Session, parent_id: int, actor_user_id: int | None) -> None:
        for cascade in self.config.cascades:
            child_model = cascade.model
            children = db.scalars(
                select(child_model).where(getattr(child_model, cascade.foreign_key) == parent_id)
            ).all()
            for child in children:
                old_values = snapshot(child)
                db.delete(child)
                self._history.record_change(
                    db,
                    actor_user_id=actor_user_id,
                    table_name=child_model.__tablename__,
                    record_id=child.id,
                    action="delete",
                    old_values=old_values,
                    new_values=None,
                    reason=f"cascade: {self.config.table_name} {parent_id} deleted",
                )
            db.flush()

    def _stamp(self, row: Any, *, creating: bool) -> None:
        if not isinstance(row, TimestampMixin):
            return
        now = self._clock.now()
        if creating:
            row.created_at = now
        row.updated_at = now

    def _check_gate(self, actor_user_id: int | None, feature_key: str | None, action: str) -> None:
        # No actor: internal system call (seeding, maintenance).
        if actor_user_id is None or feature_key is None:
            return
        self._gate(actor_user_id, feature_key, self.config.table_name, action)

    def _ensure_operation(self, operation: str) -> None:
        if operation not in self.config.operations:
            raise ValidationError.single("operation", f"{operation!r} is not supported for {self.config.kind}")

    def _column_names(self) -> set[str]:
        return set(self.config.model.__table__.columns.keys())

    def _view(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in values.items() if k not in self.config.hidden_fields}

    def _committed(self) -> None:
        if self._on_commit is not None and self.config.invalidates:
            self._on_commit(self.config.invalidates)
