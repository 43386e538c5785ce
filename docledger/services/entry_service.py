import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docledger.core.auth import LEDGER_ROLES
from docledger.core.errors import (
    ConflictError,
    DocumentLocked,
    Forbidden,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from docledger.core.storage import storage_retry
from docledger.models.accounting import AccountingDocument, EntryLine, ProposedEntry
from docledger.schemas.document import DocumentStatus, FieldName
from docledger.schemas.ledger import EntryLineIn, EntryStatus, PostingSide
from docledger.services.chart_of_accounts import ChartOfAccounts
from docledger.services.document_service import get_document
from docledger.services.field_shapes import CENT, parse_amount, parse_date, to_money
from docledger.services.transition_service import (
    apply_entry_transition,
    apply_transition,
    create_audit_log,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (FieldName.TOTAL_AMOUNT, FieldName.RECEIPT_DATE)
LIVE_STATUSES = (EntryStatus.DRAFT.value, EntryStatus.VALIDATED.value, EntryStatus.POSTED.value)
POSTABLE_DOCUMENT_STATUSES = {DocumentStatus.PENDING_REVIEW, DocumentStatus.CATEGORIZED}
ZERO = Decimal("0.00")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _opposite(side: PostingSide) -> PostingSide:
    return PostingSide.CREDIT if side == PostingSide.DEBIT else PostingSide.DEBIT


def entry_totals(entry: ProposedEntry) -> tuple[Decimal, Decimal]:
    total_debit = sum((to_money(line.debit) for line in entry.lines), ZERO)
    total_credit = sum((to_money(line.credit) for line in entry.lines), ZERO)
    return total_debit, total_credit


def get_entry(db: Session, entry_id: str) -> ProposedEntry:
    entry = db.get(ProposedEntry, entry_id)
    if entry is None:
        raise NotFoundError(f"Entry {entry_id} not found")
    return entry


def live_entry_for(db: Session, document_id) -> Optional[ProposedEntry]:
    return (
        db.query(ProposedEntry)
        .filter(ProposedEntry.document_id == document_id, ProposedEntry.status.in_(LIVE_STATUSES))
        .one_or_none()
    )


def _ensure_document_open(document: AccountingDocument) -> None:
    if DocumentStatus(document.status) == DocumentStatus.POSTED:
        raise DocumentLocked(f"Document {document.id} is posted and locked")


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def _check_required_fields(
    document: AccountingDocument,
    *,
    accept_low_confidence: bool,
) -> tuple[dict[str, Any], bool]:
    """Return the required fields by name and whether an override was used.

    Raises ``ValidationError`` listing every missing, unverified or
    unparseable required field.
    """
    by_name = {f.field_name: f for f in document.fields}
    errors: list[dict[str, Any]] = []
    override_used = False

    for name in REQUIRED_FIELDS:
        field = by_name.get(name.value)
        if field is None or not field.final_value:
            errors.append({"rule": "missing_field", "field": name.value})
            continue
        if not field.is_verified:
            if accept_low_confidence:
                override_used = True
            else:
                errors.append(
                    {"rule": "unverified_field", "field": name.value, "confidence": float(field.confidence)}
                )

    for name in (FieldName.TOTAL_AMOUNT, FieldName.TAX_AMOUNT):
        amount = by_name.get(name.value)
        if amount is not None and amount.final_value and parse_amount(amount.final_value) is None:
            errors.append({"rule": "unparseable_amount", "field": name.value, "value": amount.final_value})
    receipt_date = by_name.get(FieldName.RECEIPT_DATE.value)
    if receipt_date is not None and receipt_date.final_value and parse_date(receipt_date.final_value) is None:
        errors.append({"rule": "unparseable_date", "field": FieldName.RECEIPT_DATE.value})

    if errors:
        raise ValidationError(
            f"Document {document.id} is not ready for posting",
            errors=errors,
        )
    return by_name, override_used


def build_lines(
    *,
    total: Decimal,
    tax: Decimal,
    gross_account: str,
    gross_side: PostingSide,
    net_account: str,
    tax_account: Optional[str],
) -> list[dict[str, Any]]:
    """Split a gross amount into gross, net and tax posting lines.

    A negative total (refund) swaps the sides. Tax gets its own line only when
    it is positive and a tax account exists; otherwise it stays in net.
    """
    if total < 0:
        total, tax, gross_side = -total, abs(tax), _opposite(gross_side)
    net_side = _opposite(gross_side)

    def _line(account: str, side: PostingSide, amount: Decimal, description: str) -> dict[str, Any]:
        amount = amount.quantize(CENT)
        return {
            "account_code": account,
            "debit": amount if side == PostingSide.DEBIT else ZERO,
            "credit": amount if side == PostingSide.CREDIT else ZERO,
            "description": description,
        }

    lines = [_line(gross_account, gross_side, total, "gross")]
    if tax_account and ZERO < tax < total:
        lines.append(_line(net_account, net_side, total - tax, "net"))
        lines.append(_line(tax_account, net_side, tax, "tax"))
    else:
        lines.append(_line(net_account, net_side, total, "net"))
    return lines


@storage_retry
def generate_entry(
    db: Session,
    document_id: str,
    *,
    actor_id: Optional[str],
    actor_role: Optional[str],
    accept_low_confidence: bool = False,
) -> ProposedEntry:
    document = get_document(db, document_id)
    _ensure_document_open(document)
    status = DocumentStatus(document.status)
    if status not in POSTABLE_DOCUMENT_STATUSES:
        raise InvalidTransition(
            f"Document {document.id} is {status.value}; entries need a classified document",
            errors=[{"rule": "entry_source_status", "status": status.value}],
        )
    if accept_low_confidence and actor_role not in LEDGER_ROLES:
        raise Forbidden("Accepting low-confidence fields requires an accountant")

    existing = live_entry_for(db, document.id)
    if existing is not None:
        return existing

    by_name, override_used = _check_required_fields(document, accept_low_confidence=accept_low_confidence)

    chart = ChartOfAccounts(db)
    mapping = chart.mapping_for(document.document_type)
    if mapping is None:
        raise ValidationError(
            f"No account mapping for document type {document.document_type}",
            errors=[{"rule": "no_account_mapping", "document_type": document.document_type}],
        )

    total = parse_amount(by_name[FieldName.TOTAL_AMOUNT.value].final_value)
    tax_field = by_name.get(FieldName.TAX_AMOUNT.value)
    tax = (parse_amount(tax_field.final_value) if tax_field is not None else None) or ZERO
    vendor = by_name.get(FieldName.VENDOR_NAME.value)
    counterparty = vendor.final_value if vendor is not None else None

    entry = ProposedEntry(
        document_id=document.id,
        entry_date=parse_date(by_name[FieldName.RECEIPT_DATE.value].final_value),
        description=f"{document.document_type}: {counterparty or document.original_filename}",
        counterparty=counterparty,
        status=EntryStatus.DRAFT.value,
        validation_errors=[],
        low_confidence_override=override_used,
        override_by=actor_id if override_used else None,
        created_by=actor_id,
        created_at=_now(),
    )
    lines = build_lines(
        total=total,
        tax=tax,
        gross_account=mapping.gross_account_code,
        gross_side=PostingSide(mapping.gross_side),
        net_account=mapping.net_account_code,
        tax_account=mapping.tax_account_code,
    )
    for line_no, line in enumerate(lines, start=1):
        entry.lines.append(EntryLine(line_no=line_no, **line))
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        # Lost the race against a concurrent generation for the same document.
        db.rollback()
        existing = live_entry_for(db, document_id)
        if existing is None:
            raise
        return existing

    create_audit_log(
        db,
        entity_type="entry",
        entity_id=str(entry.id),
        action="ENTRY_GENERATED",
        old_value=None,
        new_value={"document_id": str(document.id), "total": str(total), "lines": len(lines)},
        actor_type="USER",
        actor_id=actor_id,
        metadata={"low_confidence_override": override_used},
    )
    db.commit()
    db.refresh(entry)
    logger.info("Generated entry %s for document %s", entry.id, document.id)
    return entry


@storage_retry
def replace_lines(
    db: Session,
    entry_id: str,
    lines: list[EntryLineIn],
    *,
    actor_id: Optional[str],
) -> ProposedEntry:
    entry = get_entry(db, entry_id)
    _ensure_document_open(get_document(db, entry.document_id))
    if EntryStatus(entry.status) != EntryStatus.DRAFT:
        raise InvalidTransition(
            f"Only DRAFT entries can be edited, entry is {entry.status}",
            errors=[{"rule": "editable_status", "status": entry.status}],
        )

    old_lines = [
        {"account_code": line.account_code, "debit": str(line.debit), "credit": str(line.credit)}
        for line in entry.lines
    ]
    entry.lines.clear()
    # Old rows must be gone before new rows reuse their line numbers.
    db.flush()
    for line_no, line in enumerate(lines, start=1):
        entry.lines.append(
            EntryLine(
                line_no=line_no,
                account_code=line.account_code.strip(),
                debit=line.debit,
                credit=line.credit,
                description=line.description,
            )
        )
    entry.validation_errors = []
    db.flush()

    create_audit_log(
        db,
        entity_type="entry",
        entity_id=str(entry.id),
        action="ENTRY_LINES_REPLACED",
        old_value={"lines": old_lines},
        new_value={
            "lines": [
                {"account_code": line.account_code, "debit": str(line.debit), "credit": str(line.credit)}
                for line in lines
            ]
        },
        actor_type="USER",
        actor_id=actor_id,
    )
    db.commit()
    db.refresh(entry)
    return entry


# ---------------------------------------------------------------------------
# Validation and posting
# ---------------------------------------------------------------------------


def check_entry(entry: ProposedEntry, chart: ChartOfAccounts) -> list[dict[str, Any]]:
    """Apply every posting rule and return all violations (empty when valid).

    Debit and credit totals are compared exactly as cent-quantized decimals.
    """
    errors: list[dict[str, Any]] = []
    if not entry.lines:
        return [{"rule": "empty_entry"}]

    for line in entry.lines:
        debit = to_money(line.debit)
        credit = to_money(line.credit)
        if debit < 0 or credit < 0 or (debit != 0) == (credit != 0):
            errors.append(
                {
                    "rule": "malformed_line",
                    "line_no": line.line_no,
                    "debit": str(debit),
                    "credit": str(credit),
                }
            )
        account = chart.account(line.account_code)
        if account is None:
            errors.append({"rule": "unknown_account", "line_no": line.line_no, "account_code": line.account_code})
        elif not account.is_active:
            errors.append({"rule": "inactive_account", "line_no": line.line_no, "account_code": line.account_code})

    if entry.entry_date is None:
        errors.append({"rule": "no_open_period", "entry_date": None})
    else:
        is_open, rule = chart.is_open(entry.entry_date)
        if not is_open:
            errors.append({"rule": rule, "entry_date": entry.entry_date.isoformat()})

    total_debit, total_credit = entry_totals(entry)
    if total_debit != total_credit:
        errors.append(
            {
                "rule": "unbalanced",
                "total_debit": str(total_debit),
                "total_credit": str(total_credit),
                "difference": str(total_debit - total_credit),
            }
        )
    return errors


@storage_retry
def validate_entry(db: Session, entry_id: str, *, actor_id: Optional[str]) -> ProposedEntry:
    """DRAFT -> VALIDATED, or store every violation, commit, and raise."""
    entry = get_entry(db, entry_id)
    _ensure_document_open(get_document(db, entry.document_id))
    status = EntryStatus(entry.status)
    if status == EntryStatus.VALIDATED:
        return entry
    if status != EntryStatus.DRAFT:
        raise InvalidTransition(
            f"Entry {entry.id} is {status.value} and cannot be validated",
            errors=[{"rule": "transition", "from": status.value, "to": EntryStatus.VALIDATED.value}],
        )

    errors = check_entry(entry, ChartOfAccounts(db))
    if errors:
        entry.validation_errors = errors
        create_audit_log(
            db,
            entity_type="entry",
            entity_id=str(entry.id),
            action="ENTRY_VALIDATION_FAILED",
            old_value=None,
            new_value={"errors": errors},
            actor_type="USER",
            actor_id=actor_id,
            metadata={"rules": sorted({e["rule"] for e in errors})},
        )
        db.commit()
        raise ValidationError(f"Entry {entry_id} failed {len(errors)} rule(s)", errors=errors)

    apply_entry_transition(
        db,
        entry=entry,
        new_status=EntryStatus.VALIDATED,
        values={"validation_errors": [], "validated_at": _now()},
    )
    create_audit_log(
        db,
        entity_type="entry",
        entity_id=str(entry.id),
        action="ENTRY_VALIDATED",
        old_value={"status": status.value},
        new_value={"status": EntryStatus.VALIDATED.value},
        actor_type="USER",
        actor_id=actor_id,
    )
    db.commit()
    db.refresh(entry)
    return entry


@storage_retry
def post_entry(db: Session, entry_id: str, *, actor_id: Optional[str]) -> ProposedEntry:
    """VALIDATED -> POSTED; locks the source document in the same transaction."""
    entry = get_entry(db, entry_id)
    document = get_document(db, entry.document_id)
    if EntryStatus(entry.status) != EntryStatus.VALIDATED:
        raise InvalidTransition(
            f"Entry {entry.id} is {entry.status}; only VALIDATED entries can be posted",
            errors=[{"rule": "transition", "from": entry.status, "to": EntryStatus.POSTED.value}],
        )
    _ensure_document_open(document)

    chart = ChartOfAccounts(db)
    is_open, rule = chart.is_open(entry.entry_date) if entry.entry_date else (False, "no_open_period")
    if not is_open:
        raise ValidationError(
            f"Entry {entry.id} falls outside an open period",
            errors=[{"rule": rule, "entry_date": entry.entry_date.isoformat() if entry.entry_date else None}],
        )

    next_sequence = (db.query(func.max(ProposedEntry.sequence_number)).scalar() or 0) + 1
    posted_at = _now()
    try:
        apply_entry_transition(
            db,
            entry=entry,
            new_status=EntryStatus.POSTED,
            values={"sequence_number": next_sequence, "posted_at": posted_at, "posted_by": actor_id},
        )
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            "Another entry was posted concurrently; retry",
            errors=[{"rule": "sequence_taken", "sequence_number": next_sequence}],
        ) from exc
    apply_transition(
        db,
        document=document,
        new_status=DocumentStatus.POSTED,
        actor_type="USER",
        actor_id=actor_id,
        metadata={"entry_id": str(entry.id), "sequence_number": next_sequence},
    )
    create_audit_log(
        db,
        entity_type="entry",
        entity_id=str(entry.id),
        action="ENTRY_POSTED",
        old_value={"status": EntryStatus.VALIDATED.value},
        new_value={"status": EntryStatus.POSTED.value, "sequence_number": next_sequence},
        actor_type="USER",
        actor_id=actor_id,
    )
    db.commit()
    db.refresh(entry)
    logger.info("Posted entry %s as #%s", entry.id, next_sequence)
    return entry


@storage_retry
def reject_entry(db: Session, entry_id: str, reason: str, *, actor_id: Optional[str]) -> ProposedEntry:
    entry = get_entry(db, entry_id)
    old_status = entry.status
    apply_entry_transition(
        db,
        entry=entry,
        new_status=EntryStatus.REJECTED,
        values={"rejection_reason": reason},
    )
    create_audit_log(
        db,
        entity_type="entry",
        entity_id=str(entry.id),
        action="ENTRY_REJECTED",
        old_value={"status": old_status},
        new_value={"status": EntryStatus.REJECTED.value, "reason": reason},
        actor_type="USER",
        actor_id=actor_id,
    )
    db.commit()
    db.refresh(entry)
    return entry
