import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from docledger.core.auth import LEDGER_ROLES, REVIEW_ROLES, CurrentUser, require_roles
from docledger.core.dependencies import get_db
from docledger.models.accounting import ProposedEntry
from docledger.schemas.ledger import (
    EntryGenerateRequest,
    EntryLineOut,
    EntryLinesReplace,
    EntryRejectRequest,
    ProposedEntryOut,
)
from docledger.services import entry_service
from docledger.services.field_shapes import to_money

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/documents/{document_id}/entries", response_model=ProposedEntryOut, status_code=201)
def generate_entry(
    document_id: str,
    payload: Optional[EntryGenerateRequest] = Body(default=None),
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    entry = entry_service.generate_entry(
        db,
        document_id,
        actor_id=current_user.id,
        actor_role=current_user.role,
        accept_low_confidence=bool(payload and payload.accept_low_confidence),
    )
    return _entry_to_out(entry)


@router.get("/entries/{entry_id}", response_model=ProposedEntryOut)
def get_entry(
    entry_id: str,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    return _entry_to_out(entry_service.get_entry(db, entry_id))


@router.put("/entries/{entry_id}/lines", response_model=ProposedEntryOut)
def replace_lines(
    entry_id: str,
    payload: EntryLinesReplace,
    current_user: CurrentUser = Depends(require_roles(*LEDGER_ROLES)),
    db: Session = Depends(get_db),
):
    entry = entry_service.replace_lines(db, entry_id, payload.lines, actor_id=current_user.id)
    return _entry_to_out(entry)


@router.post("/entries/{entry_id}/validate", response_model=ProposedEntryOut)
def validate_entry(
    entry_id: str,
    current_user: CurrentUser = Depends(require_roles(*LEDGER_ROLES)),
    db: Session = Depends(get_db),
):
    return _entry_to_out(entry_service.validate_entry(db, entry_id, actor_id=current_user.id))


@router.post("/entries/{entry_id}/post", response_model=ProposedEntryOut)
def post_entry(
    entry_id: str,
    current_user: CurrentUser = Depends(require_roles(*LEDGER_ROLES)),
    db: Session = Depends(get_db),
):
    return _entry_to_out(entry_service.post_entry(db, entry_id, actor_id=current_user.id))


@router.post("/entries/{entry_id}/reject", response_model=ProposedEntryOut)
def reject_entry(
    entry_id: str,
    payload: EntryRejectRequest,
    current_user: CurrentUser = Depends(require_roles(*LEDGER_ROLES)),
    db: Session = Depends(get_db),
):
    entry = entry_service.reject_entry(db, entry_id, payload.reason, actor_id=current_user.id)
    return _entry_to_out(entry)


def _entry_to_out(e: ProposedEntry) -> ProposedEntryOut:
    total_debit, total_credit = entry_service.entry_totals(e)
    return ProposedEntryOut(
        id=str(e.id),
        document_id=str(e.document_id),
        entry_date=e.entry_date,
        description=e.description,
        counterparty=e.counterparty,
        status=e.status,
        sequence_number=e.sequence_number,
        lines=[
            EntryLineOut(
                line_no=line.line_no,
                account_code=line.account_code,
                debit=to_money(line.debit),
                credit=to_money(line.credit),
                description=line.description,
            )
            for line in e.lines
        ],
        total_debit=total_debit,
        total_credit=total_credit,
        validation_errors=list(e.validation_errors or []),
        low_confidence_override=bool(e.low_confidence_override),
        override_by=e.override_by,
        rejection_reason=e.rejection_reason,
        validated_at=e.validated_at,
        posted_at=e.posted_at,
        posted_by=e.posted_by,
        created_at=e.created_at,
    )
