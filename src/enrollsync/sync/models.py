"""Sync ledger persistence models.

Two SQLAlchemy models on the shared declarative Base:
- SyncRecordModel: Idempotency/audit log of enrollment -> deal syncs, plus the
  singleton OAuth token row (discriminated by ``type``)
- ContactMappingModel: External contact id -> CRM contact id identity map

``sync_records.enrollment_id`` carries a unique constraint; it is the
arbiter for concurrent deliveries of the same enrollment. NULLs are allowed
so the oauth_token row does not collide with anything.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.enrollsync.core.database import Base


class SyncRecordModel(Base):
    """One row per external enrollment (or the persisted OAuth token)."""

    __tablename__ = "sync_records"
    __table_args__ = (
        UniqueConstraint("enrollment_id", name="uq_sync_records_enrollment_id"),
        Index("ix_sync_records_type", "type"),
        Index("ix_sync_records_status", "status"),
        Index("ix_sync_records_deal_id", "deal_id"),
        Index("ix_sync_records_student_email", "student_email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)

    # enrollment_to_deal
    enrollment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    student_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    student_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    course_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    course_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enrollment_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # oauth_token
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # outcome
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class ContactMappingModel(Base):
    """Durable external contact id -> CRM contact id link."""

    __tablename__ = "contact_mappings"
    __table_args__ = (
        UniqueConstraint("external_contact_id", name="uq_contact_mappings_external_id"),
        Index("ix_contact_mappings_crm_contact_id", "crm_contact_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    crm_contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(150), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
