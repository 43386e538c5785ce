from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AccountType(StrEnum):
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


# Debit-normal accounts grow with debits; the rest grow with credits.
DEBIT_NORMAL = {AccountType.ASSET, AccountType.EXPENSE}


class PostingSide(StrEnum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class EntryStatus(StrEnum):
    DRAFT = "DRAFT"
    VALIDATED = "VALIDATED"
    POSTED = "POSTED"
    REJECTED = "REJECTED"


class ReportType(StrEnum):
    INCOME_STATEMENT = "INCOME_STATEMENT"
    BALANCE_SHEET = "BALANCE_SHEET"
    GENERAL_LEDGER = "GENERAL_LEDGER"
    SUB_LEDGER = "SUB_LEDGER"
    TRIAL_BALANCE = "TRIAL_BALANCE"


class ReportStatus(StrEnum):
    DRAFT = "DRAFT"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ARCHIVED = "ARCHIVED"


# --- Entries ---


class EntryGenerateRequest(BaseModel):
    accept_low_confidence: bool = False


class EntryLineIn(BaseModel):
    account_code: str = Field(..., min_length=1, max_length=32)
    debit: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    credit: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=512)


class EntryLinesReplace(BaseModel):
    lines: list[EntryLineIn] = Field(..., min_length=1, max_length=200)


class EntryRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=512)


class EntryLineOut(BaseModel):
    line_no: int
    account_code: str
    debit: Decimal
    credit: Decimal
    description: Optional[str] = None


class ProposedEntryOut(BaseModel):
    id: str
    document_id: str
    entry_date: Optional[date] = None
    description: Optional[str] = None
    counterparty: Optional[str] = None
    status: EntryStatus
    sequence_number: Optional[int] = None
    lines: list[EntryLineOut]
    total_debit: Decimal
    total_credit: Decimal
    validation_errors: list[dict[str, Any]] = []
    low_confidence_override: bool = False
    override_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    validated_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    posted_by: Optional[str] = None
    created_at: Optional[datetime] = None


# --- Reports ---


class ReportOut(BaseModel):
    id: str
    report_type: ReportType
    period_start: date
    period_end: date
    version: int
    status: ReportStatus
    cached_data: Optional[dict[str, Any]] = None
    is_balanced: Optional[bool] = None
    failure_reason: Optional[str] = None
    view_count: int
    generated_at: Optional[datetime] = None
    refreshed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
