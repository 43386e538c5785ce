import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")
MONEY_TYPE = Numeric(14, 2)


def _uuid_pk():
    return Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


class AccountingDocument(Base):
    __tablename__ = "accounting_documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('UPLOADED','CLASSIFYING','UNRECOGNIZED','PENDING_REVIEW','CATEGORIZED','POSTED')",
            name="chk_document_status",
        ),
        CheckConstraint(
            "ai_confidence_score IS NULL OR (ai_confidence_score >= 0 AND ai_confidence_score <= 1)",
            name="chk_document_confidence",
        ),
        Index("idx_document_status_created", "status", "created_at"),
    )

    id = _uuid_pk()
    original_filename = Column(String(256), nullable=False)
    content_ref = Column(Text)
    content_text = Column(Text)
    status = Column(String(32), nullable=False, default="UPLOADED", server_default=text("'UPLOADED'"))
    document_type = Column(String(32))
    unrecognized_reason = Column(String(64))
    ai_confidence_score = Column(Float)
    ai_warnings = Column(JSON_TYPE, nullable=False, default=list)
    detected_language = Column(String(16))
    manual_entry_required = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    notes = Column(Text)
    uploaded_by = Column(String(64))
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime(timezone=True))
    status_changed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    fields = relationship(
        "ExtractedField",
        back_populates="document",
        order_by="ExtractedField.created_at",
        cascade="all, delete-orphan",
    )


class ExtractedField(Base):
    __tablename__ = "extracted_fields"
    __table_args__ = (
        UniqueConstraint("document_id", "field_name", name="uniq_field_per_document"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="chk_field_confidence"),
    )

    id = _uuid_pk()
    document_id = Column(UUID_TYPE, ForeignKey("accounting_documents.id", ondelete="CASCADE"), nullable=False)
    field_name = Column(String(64), nullable=False)
    extracted_value = Column(Text)
    corrected_value = Column(Text)
    confidence = Column(Float, nullable=False, default=0.0)
    bounding_box = Column(JSON_TYPE)
    is_verified = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    verified_by = Column(String(64))
    verified_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    document = relationship("AccountingDocument", back_populates="fields")

    @property
    def final_value(self):
        if self.corrected_value is not None:
            return self.corrected_value
        return self.extracted_value

    def needs_review(self, threshold: float) -> bool:
        return float(self.confidence) < threshold and not self.is_verified


class FieldCorrection(Base):
    """Append-only correction history."""

    __tablename__ = "field_corrections"
    __table_args__ = (Index("idx_correction_document", "document_id", "created_at"),)

    id = _uuid_pk()
    field_id = Column(UUID_TYPE, ForeignKey("extracted_fields.id", ondelete="CASCADE"), nullable=False)
    document_id = Column(UUID_TYPE, ForeignKey("accounting_documents.id", ondelete="CASCADE"), nullable=False)
    field_name = Column(String(64), nullable=False)
    old_value = Column(Text)
    new_value = Column(Text)
    actor_id = Column(String(64))
    note = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint(
            "account_type IN ('ASSET','LIABILITY','EQUITY','REVENUE','EXPENSE')",
            name="chk_account_type",
        ),
    )

    code = Column(String(32), primary_key=True)
    name = Column(String(128), nullable=False)
    account_type = Column(String(16), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))


class AccountingPeriod(Base):
    __tablename__ = "accounting_periods"
    __table_args__ = (Index("idx_period_range", "start_date", "end_date"),)

    id = _uuid_pk()
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    fiscal_year = Column(Integer, nullable=False)
    is_closed = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    fiscal_year_closed = Column(Boolean, nullable=False, default=False, server_default=text("false"))


class AccountMapping(Base):
    __tablename__ = "account_mappings"

    document_type = Column(String(32), primary_key=True)
    gross_account_code = Column(String(32), nullable=False)
    gross_side = Column(String(8), nullable=False)
    net_account_code = Column(String(32), nullable=False)
    tax_account_code = Column(String(32))


class ProposedEntry(Base):
    __tablename__ = "proposed_entries"
    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT','VALIDATED','POSTED','REJECTED')",
            name="chk_entry_status",
        ),
        UniqueConstraint("sequence_number", name="uniq_entry_sequence"),
        Index("idx_entry_document", "document_id"),
        # One live entry per document; rejected entries are kept as history.
        Index(
            "uniq_live_entry_document",
            "document_id",
            unique=True,
            sqlite_where=text("status != 'REJECTED'"),
            postgresql_where=text("status != 'REJECTED'"),
        ),
        Index("idx_entry_status_date", "status", "entry_date"),
    )

    id = _uuid_pk()
    document_id = Column(UUID_TYPE, ForeignKey("accounting_documents.id", ondelete="CASCADE"), nullable=False)
    entry_date = Column(Date)
    description = Column(Text)
    counterparty = Column(String(256))
    status = Column(String(16), nullable=False, default="DRAFT", server_default=text("'DRAFT'"))
    sequence_number = Column(Integer)
    validation_errors = Column(JSON_TYPE, nullable=False, default=list)
    low_confidence_override = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    override_by = Column(String(64))
    rejection_reason = Column(Text)
    created_by = Column(String(64))
    validated_at = Column(DateTime(timezone=True))
    posted_at = Column(DateTime(timezone=True))
    posted_by = Column(String(64))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    lines = relationship(
        "EntryLine",
        back_populates="entry",
        order_by="EntryLine.line_no",
        cascade="all, delete-orphan",
    )


class EntryLine(Base):
    __tablename__ = "entry_lines"
    __table_args__ = (
        UniqueConstraint("entry_id", "line_no", name="uniq_entry_line_no"),
        CheckConstraint("debit >= 0 AND credit >= 0", name="chk_line_non_negative"),
        Index("idx_line_account", "account_code"),
    )

    id = _uuid_pk()
    entry_id = Column(UUID_TYPE, ForeignKey("proposed_entries.id", ondelete="CASCADE"), nullable=False)
    line_no = Column(Integer, nullable=False)
    account_code = Column(String(32), nullable=False)
    debit = Column(MONEY_TYPE, nullable=False, default=0)
    credit = Column(MONEY_TYPE, nullable=False, default=0)
    description = Column(Text)

    entry = relationship("ProposedEntry", back_populates="lines")


class Report(Base):
    __tablename__ = "reports"
    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT','GENERATING','COMPLETED','FAILED','ARCHIVED')",
            name="chk_report_status",
        ),
        # One live report per (type, period); archived rows are kept forever.
        Index(
            "uniq_live_report_period",
            "report_type",
            "period_start",
            "period_end",
            unique=True,
            sqlite_where=text("archived_at IS NULL"),
            postgresql_where=text("archived_at IS NULL"),
        ),
    )

    id = _uuid_pk()
    report_type = Column(String(32), nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    version = Column(Integer, nullable=False, default=0, server_default=text("0"))
    status = Column(String(16), nullable=False, default="DRAFT", server_default=text("'DRAFT'"))
    cached_data = Column(JSON_TYPE)
    failure_reason = Column(Text)
    view_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    generated_at = Column(DateTime(timezone=True))
    refreshed_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id", "timestamp"),)

    id = _uuid_pk()
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
