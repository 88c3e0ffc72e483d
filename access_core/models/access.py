from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from access_core.db.base import Base
from access_core.models.base import AppendOnlyMixin, SoftDeleteMixin, TimestampMixin, utc_now


POLICY_EFFECTS = ("allow", "deny")


class Role(TimestampMixin, Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Super-role: grants every feature without explicit RoleFeature rows.
    grants_all: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class FeatureCategory(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "feature_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class Feature(TimestampMixin, Base):
    __tablename__ = "features"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("feature_categories.id"), nullable=True, index=True)


class RoleFeature(Base):
    __tablename__ = "role_features"
    __table_args__ = (UniqueConstraint("role_id", "feature_id", name="uq_role_features_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_id: Mapped[int] = mapped_column(ForeignKey("features.id", ondelete="CASCADE"), nullable=False, index=True)


class RouteFeature(Base):
    """
    Gate edge: `method` + `path` pattern requires `feature_id`.

    Several rows with the same method/path mean the route accepts ANY of those
    features. `method="*"` matches every HTTP method.
    """

    __tablename__ = "route_features"
    __table_args__ = (UniqueConstraint("method", "path", "feature_id", name="uq_route_features_gate"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="*")
    path: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_id: Mapped[int] = mapped_column(ForeignKey("features.id", ondelete="CASCADE"), nullable=False, index=True)


class Policy(TimestampMixin, Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    effect: Mapped[str] = mapped_column(String(10), nullable=False)
    condition: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PolicyViolation(AppendOnlyMixin, Base):
    __tablename__ = "policy_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    # Plain reference: policies may be hard-deleted while their violations stay.
    policy_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    resource: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
