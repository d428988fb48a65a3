"""Create sync ledger tables.

Revision ID: 001_sync_ledger
Revises:
Create Date: 2026-10-19

Creates:
- sync_records: enrollment -> deal idempotency/audit log and the OAuth token row
- contact_mappings: external contact id -> CRM contact id

The unique constraint on sync_records.enrollment_id is what makes the
ledger claim atomic under concurrent webhook deliveries.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_sync_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── sync_records table ──────────────────────────────────────────────

    op.create_table(
        "sync_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("enrollment_id", sa.String(255), nullable=True),
        sa.Column("deal_id", sa.String(64), nullable=True),
        sa.Column("contact_id", sa.String(64), nullable=True),
        sa.Column("student_email", sa.String(320), nullable=True),
        sa.Column("student_name", sa.String(300), nullable=True),
        sa.Column("course_name", sa.String(300), nullable=True),
        sa.Column("course_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("utm_source", sa.String(255), nullable=True),
        sa.Column("utm_medium", sa.String(255), nullable=True),
        sa.Column("utm_campaign", sa.String(255), nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrollment_status", sa.String(64), nullable=True),
        sa.Column("event_snapshot", sa.JSON(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("error", sa.JSON(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("enrollment_id", name="uq_sync_records_enrollment_id"),
    )
    op.create_index("ix_sync_records_type", "sync_records", ["type"])
    op.create_index("ix_sync_records_status", "sync_records", ["status"])
    op.create_index("ix_sync_records_deal_id", "sync_records", ["deal_id"])
    op.create_index("ix_sync_records_student_email", "sync_records", ["student_email"])

    # ── contact_mappings table ──────────────────────────────────────────

    op.create_table(
        "contact_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_contact_id", sa.String(128), nullable=False),
        sa.Column("crm_contact_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("first_name", sa.String(150), nullable=True),
        sa.Column("last_name", sa.String(150), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("external_contact_id", name="uq_contact_mappings_external_id"),
    )
    op.create_index("ix_contact_mappings_crm_contact_id", "contact_mappings", ["crm_contact_id"])


def downgrade() -> None:
    op.drop_index("ix_contact_mappings_crm_contact_id", table_name="contact_mappings")
    op.drop_table("contact_mappings")
    op.drop_index("ix_sync_records_student_email", table_name="sync_records")
    op.drop_index("ix_sync_records_deal_id", table_name="sync_records")
    op.drop_index("ix_sync_records_status", table_name="sync_records")
    op.drop_index("ix_sync_records_type", table_name="sync_records")
    op.drop_table("sync_records")
