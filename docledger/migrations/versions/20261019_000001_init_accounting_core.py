"""accounting core schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # --- chart of accounts (collaborator-owned, read by the core) ---
    op.create_table(
        "accounts",
        sa.Column("code", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("account_type", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint(
            "account_type IN ('ASSET','LIABILITY','EQUITY','REVENUE','EXPENSE')",
            name="chk_account_type",
        ),
    )
    op.create_table(
        "accounting_periods",
        _uuid_pk(),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("fiscal_year", sa.Integer(), nullable=False),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("fiscal_year_closed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("idx_period_range", "accounting_periods", ["start_date", "end_date"])
    op.create_table(
        "account_mappings",
        sa.Column("document_type", sa.String(32), primary_key=True),
        sa.Column("gross_account_code", sa.String(32), nullable=False),
        sa.Column("gross_side", sa.String(8), nullable=False),
        sa.Column("net_account_code", sa.String(32), nullable=False),
        sa.Column("tax_account_code", sa.String(32)),
    )

    # --- accounting_documents ---
    op.create_table(
        "accounting_documents",
        _uuid_pk(),
        sa.Column("original_filename", sa.String(256), nullable=False),
        sa.Column("content_ref", sa.Text()),
        sa.Column("content_text", sa.Text()),
        sa.Column("status", sa.String(32), nullable=False, server_default=sa.text("'UPLOADED'")),
        sa.Column("document_type", sa.String(32)),
        sa.Column("unrecognized_reason", sa.String(64)),
        sa.Column("ai_confidence_score", sa.Float()),
        sa.Column(
            "ai_warnings",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("detected_language", sa.String(16)),
        sa.Column("manual_entry_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notes", sa.Text()),
        sa.Column("uploaded_by", sa.String(64)),
        sa.Column("reviewed_by", sa.String(64)),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("status_changed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('UPLOADED','CLASSIFYING','UNRECOGNIZED','PENDING_REVIEW','CATEGORIZED','POSTED')",
            name="chk_document_status",
        ),
        sa.CheckConstraint(
            "ai_confidence_score IS NULL OR (ai_confidence_score >= 0 AND ai_confidence_score <= 1)",
            name="chk_document_confidence",
        ),
    )
    op.create_index("idx_document_status_created", "accounting_documents", ["status", "created_at"])

    # --- extracted_fields + correction history ---
    op.create_table(
        "extracted_fields",
        _uuid_pk(),
        sa.Column(
            "document_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounting_documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("field_name", sa.String(64), nullable=False),
        sa.Column("extracted_value", sa.Text()),
        sa.Column("corrected_value", sa.Text()),
        sa.Column("confidence", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("bounding_box", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verified_by", sa.String(64)),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("document_id", "field_name", name="uniq_field_per_document"),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="chk_field_confidence"),
    )
    op.create_table(
        "field_corrections",
        _uuid_pk(),
        sa.Column(
            "field_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("extracted_fields.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "document_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounting_documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("field_name", sa.String(64), nullable=False),
        sa.Column("old_value", sa.Text()),
        sa.Column("new_value", sa.Text()),
        sa.Column("actor_id", sa.String(64)),
        sa.Column("note", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_correction_document", "field_corrections", ["document_id", "created_at"])

    # --- proposed_entries + entry_lines ---
    op.create_table(
        "proposed_entries",
        _uuid_pk(),
        sa.Column(
            "document_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounting_documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entry_date", sa.Date()),
        sa.Column("description", sa.Text()),
        sa.Column("counterparty", sa.String(256)),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("sequence_number", sa.Integer()),
        sa.Column(
            "validation_errors",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("low_confidence_override", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("override_by", sa.String(64)),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("created_by", sa.String(64)),
        sa.Column("validated_at", sa.DateTime(timezone=True)),
        sa.Column("posted_at", sa.DateTime(timezone=True)),
        sa.Column("posted_by", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('DRAFT','VALIDATED','POSTED','REJECTED')", name="chk_entry_status"),
        sa.UniqueConstraint("sequence_number", name="uniq_entry_sequence"),
    )
    op.create_index("idx_entry_document", "proposed_entries", ["document_id"])
    op.create_index(
        "uniq_live_entry_document",
        "proposed_entries",
        ["document_id"],
        unique=True,
        postgresql_where=sa.text("status != 'REJECTED'"),
    )
    op.create_index("idx_entry_status_date", "proposed_entries", ["status", "entry_date"])

    op.create_table(
        "entry_lines",
        _uuid_pk(),
        sa.Column(
            "entry_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("proposed_entries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("account_code", sa.String(32), nullable=False),
        sa.Column("debit", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("credit", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("description", sa.Text()),
        sa.UniqueConstraint("entry_id", "line_no", name="uniq_entry_line_no"),
        sa.CheckConstraint("debit >= 0 AND credit >= 0", name="chk_line_non_negative"),
    )
    op.create_index("idx_line_account", "entry_lines", ["account_code"])

    # --- reports ---
    op.create_table(
        "reports",
        _uuid_pk(),
        sa.Column("report_type", sa.String(32), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default=sa.text("'DRAFT'")),
        sa.Column("cached_data", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("generated_at", sa.DateTime(timezone=True)),
        sa.Column("refreshed_at", sa.DateTime(timezone=True)),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('DRAFT','GENERATING','COMPLETED','FAILED','ARCHIVED')",
            name="chk_report_status",
        ),
    )
    op.create_index(
        "uniq_live_report_period",
        "reports",
        ["report_type", "period_start", "period_end"],
        unique=True,
        postgresql_where=sa.text("archived_at IS NULL"),
    )

    # --- audit_logs ---
    op.create_table(
        "audit_logs",
        _uuid_pk(),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("old_value", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("new_value", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("actor_type", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.String(64)),
        sa.Column("ip_address", postgresql.INET()),
        sa.Column("user_agent", sa.Text()),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_audit_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("uniq_live_report_period", table_name="reports")
    op.drop_table("reports")
    op.drop_index("idx_line_account", table_name="entry_lines")
    op.drop_table("entry_lines")
    op.drop_index("idx_entry_status_date", table_name="proposed_entries")
    op.drop_index("uniq_live_entry_document", table_name="proposed_entries")
    op.drop_index("idx_entry_document", table_name="proposed_entries")
    op.drop_table("proposed_entries")
    op.drop_index("idx_correction_document", table_name="field_corrections")
    op.drop_table("field_corrections")
    op.drop_table("extracted_fields")
    op.drop_index("idx_document_status_created", table_name="accounting_documents")
    op.drop_table("accounting_documents")
    op.drop_table("account_mappings")
    op.drop_index("idx_period_range", table_name="accounting_periods")
    op.drop_table("accounting_periods")
    op.drop_table("accounts")
