from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere so SQLite-backed tests share the schema.
JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Subscription(Base):
    __tablename__ = "subscriptions"

    # One record per subject; a new checkout replaces the previous record.
    subject_id: Mapped[str] = mapped_column(String, primary_key=True)
    plan_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Lifetime and never-expiring grants skip period-end evaluation entirely.
    never_expires: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Opaque billing identifiers used to route upstream events back to the subject.
    billing_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SpecialAccessOverride(Base):
    __tablename__ = "special_access"
    __table_args__ = (
        Index("ix_special_access_org_active", "organization_id", "is_active"),
    )

    # Manual per-(subject, organization) limits; rows are deactivated, never deleted.
    subject_id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, primary_key=True)
    access_type: Mapped[str] = mapped_column(String, nullable=False)
    # Capability -> limit, where -1 means unbounded.
    limits: Mapped[dict[str, int]] = mapped_column(JsonDocument, nullable=False, default=dict)
    granted_by: Mapped[str] = mapped_column(String, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SubjectProfile(Base):
    __tablename__ = "subject_profiles"

    # Per-subject custom limits applied across every organization.
    subject_id: Mapped[str] = mapped_column(String, primary_key=True)
    has_custom_limits: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    custom_limits: Mapped[dict[str, int]] = mapped_column(JsonDocument, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageLedgerEntry(Base):
    __tablename__ = "usage"

    # Monthly counters; missing rows read as zero and are created on first increment.
    subject_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_key: Mapped[str] = mapped_column(String(7), primary_key=True)
    alerts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    groups: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    admins: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # Embedded subject -> role map; keys must be members of organization_admins.
    admin_roles: Mapped[dict[str, str]] = mapped_column(JsonDocument, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrganizationAdmin(Base):
    __tablename__ = "organization_admins"

    # Admin set with an explicit join time so ownership backfills are deterministic.
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id"), primary_key=True
    )
    subject_id: Mapped[str] = mapped_column(String, primary_key=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_org_occurred", "organization_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
