"""Shared builders for the service and API tests."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docledger.core.config import get_settings
from docledger.models.accounting import (
    Account,
    AccountingDocument,
    AccountingPeriod,
    AccountMapping,
    Base,
    EntryLine,
    ExtractedField,
    ProposedEntry,
)
from docledger.services.ai.common.providers.base import BaseProvider, ProviderResult

CASH = "1000"
RECEIVABLES = "1100"
VAT_RECEIVABLE = "1400"
PAYABLES = "2000"
VAT_PAYABLE = "2100"
EQUITY = "3000"
REVENUE = "4000"
EXPENSES = "6000"
RETIRED = "6999"


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False)


def _now():
    return datetime.now(timezone.utc)


def seed_chart(db, *, closed_2025: bool = True) -> None:
    """Accounts, a mapping per common document type and periods for 2025/2026."""
    db.add_all(
        [
            Account(code=CASH, name="Cash", account_type="ASSET"),
            Account(code=RECEIVABLES, name="Accounts receivable", account_type="ASSET"),
            Account(code=VAT_RECEIVABLE, name="Input VAT", account_type="ASSET"),
            Account(code=PAYABLES, name="Accounts payable", account_type="LIABILITY"),
            Account(code=VAT_PAYABLE, name="Output VAT", account_type="LIABILITY"),
            Account(code=EQUITY, name="Owner equity", account_type="EQUITY"),
            Account(code=REVENUE, name="Sales", account_type="REVENUE"),
            Account(code=EXPENSES, name="Operating expenses", account_type="EXPENSE"),
            Account(code=RETIRED, name="Retired expenses", account_type="EXPENSE", is_active=False),
            AccountMapping(
                document_type="receipt",
                gross_account_code=CASH,
                gross_side="CREDIT",
                net_account_code=EXPENSES,
                tax_account_code=VAT_RECEIVABLE,
            ),
            AccountMapping(
                document_type="purchase_invoice",
                gross_account_code=PAYABLES,
                gross_side="CREDIT",
                net_account_code=EXPENSES,
                tax_account_code=VAT_RECEIVABLE,
            ),
            AccountMapping(
                document_type="sales_invoice",
                gross_account_code=RECEIVABLES,
                gross_side="DEBIT",
                net_account_code=REVENUE,
                tax_account_code=VAT_PAYABLE,
            ),
            AccountingPeriod(
                start_date=date(2025, 1, 1),
                end_date=date(2025, 12, 31),
                fiscal_year=2025,
                is_closed=closed_2025,
                fiscal_year_closed=closed_2025,
            ),
            AccountingPeriod(start_date=date(2026, 1, 1), end_date=date(2026, 12, 31), fiscal_year=2026),
        ]
    )
    db.commit()


def make_document(
    db,
    *,
    status: str = "CATEGORIZED",
    document_type: str | None = "receipt",
    fields: dict | None = None,
    filename: str = "receipt.jpg",
    content_ref: str | None = None,
    content_text: str | None = None,
    created_at: datetime | None = None,
    status_changed_at: datetime | None = None,
) -> AccountingDocument:
    """Insert a document; ``fields`` maps name -> (value, confidence, verified)."""
    doc = AccountingDocument(
        original_filename=filename,
        content_ref=content_ref,
        content_text=content_text,
        status=status,
        document_type=document_type,
        ai_confidence_score=0.9 if document_type else None,
        ai_warnings=[],
        created_at=created_at or _now(),
        status_changed_at=status_changed_at,
    )
    db.add(doc)
    db.flush()
    for name, (value, confidence, verified) in (fields or {}).items():
        db.add(
            ExtractedField(
                document_id=doc.id,
                field_name=name,
                extracted_value=value,
                confidence=confidence,
                is_verified=verified,
            )
        )
    db.commit()
    db.refresh(doc)
    return doc


def make_posted_entry(
    db,
    *,
    entry_date: date,
    lines: list[tuple[str, str, str]],
    sequence_number: int,
    counterparty: str | None = None,
    status: str = "POSTED",
) -> ProposedEntry:
    """Insert an entry directly; ``lines`` are (account_code, debit, credit)."""
    doc = make_document(db, status="POSTED" if status == "POSTED" else "CATEGORIZED")
    entry = ProposedEntry(
        document_id=doc.id,
        entry_date=entry_date,
        description=f"entry {sequence_number}",
        counterparty=counterparty,
        status=status,
        sequence_number=sequence_number if status == "POSTED" else None,
        validation_errors=[],
        created_at=_now(),
    )
    for line_no, (code, debit, credit) in enumerate(lines, start=1):
        entry.lines.append(
            EntryLine(line_no=line_no, account_code=code, debit=Decimal(debit), credit=Decimal(credit))
        )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


class ScriptedProvider(BaseProvider):
    """Replays a list of answers; an exception instance is raised instead of returned."""

    name = "scripted"

    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts: list[str] = []
        self.image_urls: list[str | None] = []

    async def generate(self, prompt, *, system_prompt=None, image_url=None, model="", temperature=0.1,
                       max_tokens=1500, timeout_seconds=20.0):
        self.prompts.append(prompt)
        self.image_urls.append(image_url)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, dict):
            answer = json.dumps(answer)
        return ProviderResult(raw_text=answer, model=model or "scripted-v1", provider=self.name)


@contextmanager
def scripted_provider(*answers):
    """Route every AI scope to a ``ScriptedProvider`` with no retry backoff."""
    provider = ScriptedProvider(answers)
    with patch.dict(os.environ, {"EXTERNAL_RETRY_BACKOFF_SECONDS": "0"}):
        get_settings.cache_clear()
        with patch("docledger.services.ai.common.router.get_provider", return_value=provider):
            yield provider
    get_settings.cache_clear()


# The mock provider is never a fallback; tests that want it name it.
MOCK_AI_ENV = {"AI_CLASSIFY_PROVIDER": "mock", "AI_EXTRACT_PROVIDER": "mock"}


@contextmanager
def mock_ai():
    """Route both AI scopes to the built-in mock provider."""
    with patch.dict(os.environ, MOCK_AI_ENV):
        get_settings.cache_clear()
        yield
    get_settings.cache_clear()
