import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from docledger.core.auth import REVIEW_ROLES, CurrentUser, require_roles
from docledger.core.config import get_settings
from docledger.core.dependencies import get_db
from docledger.core.storage import run_with_storage_retry
from docledger.models.accounting import AccountingDocument, ExtractedField, FieldCorrection
from docledger.schemas.document import (
    CorrectionHistoryResponse,
    CorrectionOut,
    DocumentCreate,
    DocumentListResponse,
    DocumentOut,
    DocumentStatus,
    ExtractionGapOut,
    ExtractionOut,
    FieldCorrectRequest,
    FieldListResponse,
    FieldName,
    FieldOut,
    FieldVerifyRequest,
    ManualFieldCreate,
)
from docledger.services import correction_service, document_service
from docledger.services.classification_service import classify_document
from docledger.services.extraction_service import extract_document_fields, extraction_gaps

router = APIRouter()
logger = logging.getLogger(__name__)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent") if request else None


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@router.post("/documents", response_model=DocumentOut, status_code=201)
def create_document(
    payload: DocumentCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    def register() -> AccountingDocument:
        doc = document_service.create_document(
            db,
            payload,
            actor_type=current_user.role,
            actor_id=current_user.id,
            ip_address=_client_ip(request),
            user_agent=_user_agent(request),
        )
        db.commit()
        return doc

    doc = run_with_storage_retry(db, register, operation="create_document")
    db.refresh(doc)
    return _doc_to_out(doc)


@router.get("/documents", response_model=DocumentListResponse)
def list_documents(
    status: Optional[DocumentStatus] = Query(None),
    cursor: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    items, next_cursor, has_more = document_service.list_documents(db, status=status, cursor=cursor, limit=limit)
    return DocumentListResponse(
        items=[_doc_to_out(d) for d in items],
        next_cursor=next_cursor,
        has_more=has_more,
    )


@router.get("/documents/{document_id}", response_model=DocumentOut)
def get_document(
    document_id: str,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    return _doc_to_out(document_service.get_document(db, document_id))


@router.post("/documents/{document_id}/classify", response_model=DocumentOut)
async def classify(
    document_id: str,
    force: bool = Query(False),
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    doc = await classify_document(db, document_id, force=force, actor_id=current_user.id)
    return _doc_to_out(doc)


@router.post("/documents/{document_id}/extract", response_model=ExtractionOut)
async def extract(
    document_id: str,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    summary = await extract_document_fields(db, document_id, actor_id=current_user.id)
    return ExtractionOut(
        document_id=str(summary.document.id),
        created_fields=summary.created_fields,
        skipped_fields=summary.skipped_fields,
        gaps=summary.gaps,
        model_version=summary.model_version,
    )


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------


@router.get("/documents/{document_id}/fields", response_model=FieldListResponse)
def list_fields(
    document_id: str,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    doc = document_service.get_document(db, document_id)
    threshold = get_settings().review_confidence_threshold
    return FieldListResponse(
        items=[_field_to_out(f, threshold) for f in doc.fields],
        gaps=[ExtractionGapOut(field_name=name) for name in extraction_gaps(doc)],
        field_confidence=document_service.field_confidence(doc),
    )


@router.post("/documents/{document_id}/fields", response_model=FieldOut, status_code=201)
def create_field(
    document_id: str,
    payload: ManualFieldCreate,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    field = correction_service.create_manual_field(
        db,
        document_id,
        payload.field_name,
        payload.value,
        actor_id=current_user.id,
        note=payload.note,
    )
    return _field_to_out(field, get_settings().review_confidence_threshold)


@router.post("/documents/{document_id}/fields/{field_name}/correct", response_model=FieldOut)
def correct_field(
    document_id: str,
    field_name: FieldName,
    payload: FieldCorrectRequest,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    field = correction_service.correct_field(
        db,
        document_id,
        field_name,
        payload.value,
        actor_id=current_user.id,
        note=payload.note,
        expected_version=payload.version,
    )
    return _field_to_out(field, get_settings().review_confidence_threshold)


@router.post("/documents/{document_id}/fields/{field_name}/verify", response_model=FieldOut)
def verify_field(
    document_id: str,
    field_name: FieldName,
    payload: Optional[FieldVerifyRequest] = Body(default=None),
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    field = correction_service.verify_field(
        db,
        document_id,
        field_name,
        actor_id=current_user.id,
        expected_version=payload.version if payload else None,
    )
    return _field_to_out(field, get_settings().review_confidence_threshold)


@router.get("/documents/{document_id}/history", response_model=CorrectionHistoryResponse)
def correction_history(
    document_id: str,
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    rows = correction_service.correction_history(db, document_id)
    return CorrectionHistoryResponse(items=[_correction_to_out(c) for c in rows])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _doc_to_out(d: AccountingDocument) -> DocumentOut:
    return DocumentOut(
        id=str(d.id),
        original_filename=d.original_filename,
        content_ref=d.content_ref,
        status=d.status,
        document_type=d.document_type,
        unrecognized_reason=d.unrecognized_reason,
        ai_confidence_score=d.ai_confidence_score,
        ai_warnings=list(d.ai_warnings or []),
        detected_language=d.detected_language,
        manual_entry_required=bool(d.manual_entry_required),
        field_confidence=document_service.field_confidence(d),
        notes=d.notes,
        uploaded_by=d.uploaded_by,
        reviewed_by=d.reviewed_by,
        reviewed_at=d.reviewed_at,
        status_changed_at=d.status_changed_at,
        created_at=d.created_at,
        updated_at=d.updated_at,
    )


def _field_to_out(f: ExtractedField, threshold: float) -> FieldOut:
    return FieldOut(
        id=str(f.id),
        document_id=str(f.document_id),
        field_name=f.field_name,
        extracted_value=f.extracted_value,
        corrected_value=f.corrected_value,
        final_value=f.final_value,
        confidence=float(f.confidence),
        bounding_box=f.bounding_box,
        is_verified=bool(f.is_verified),
        needs_review=f.needs_review(threshold),
        verified_by=f.verified_by,
        verified_at=f.verified_at,
        version=f.version,
        created_at=f.created_at,
        updated_at=f.updated_at,
    )


def _correction_to_out(c: FieldCorrection) -> CorrectionOut:
    return CorrectionOut(
        id=str(c.id),
        field_id=str(c.field_id),
        field_name=c.field_name,
        old_value=c.old_value,
        new_value=c.new_value,
        actor_id=c.actor_id,
        note=c.note,
        created_at=c.created_at,
    )
