import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, desc, or_
from sqlalchemy.orm import Session

from docledger.core.errors import NotFoundError, ValidationError
from docledger.core.storage import storage_retry
from docledger.models.accounting import AccountingDocument, ExtractedField
from docledger.schemas.document import DocumentCreate, DocumentStatus
from docledger.services.transition_service import create_audit_log, document_snapshot

logger = logging.getLogger(__name__)


def create_document(
    db: Session,
    payload: DocumentCreate,
    *,
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AccountingDocument:
    doc = AccountingDocument(
        original_filename=payload.original_filename.strip(),
        content_ref=payload.content_ref,
        content_text=payload.content_text,
        notes=payload.notes,
        status=DocumentStatus.UPLOADED.value,
        ai_warnings=[],
        uploaded_by=actor_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(doc)
    db.flush()

    create_audit_log(
        db,
        entity_type="document",
        entity_id=str(doc.id),
        action="DOCUMENT_UPLOADED",
        old_value=None,
        new_value={"original_filename": doc.original_filename, **document_snapshot(doc)},
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("Registered document %s (%s)", doc.id, doc.original_filename)
    return doc


def get_document(db: Session, document_id: str) -> AccountingDocument:
    doc = db.get(AccountingDocument, document_id)
    if doc is None:
        raise NotFoundError(f"Document {document_id} not found")
    return doc


def get_field(db: Session, document: AccountingDocument, field_name: str) -> ExtractedField:
    field = (
        db.query(ExtractedField)
        .filter(ExtractedField.document_id == document.id, ExtractedField.field_name == field_name)
        .one_or_none()
    )
    if field is None:
        raise NotFoundError(f"Field {field_name} not found on document {document.id}")
    return field


def field_confidence(document: AccountingDocument) -> Optional[float]:
    """Mean of the document's field confidences, ``None`` without fields."""
    confidences = [float(f.confidence) for f in document.fields]
    if not confidences:
        return None
    return round(sum(confidences) / len(confidences), 4)


def encode_cursor(dt: datetime, document_id: uuid.UUID) -> str:
    """Opaque page marker for the last row served: its ``created_at`` and id."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    raw = f"{dt.isoformat()}|{document_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("utf-8")


def decode_cursor(value: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(value.encode("utf-8")).decode("utf-8")
        stamp, _, document_id = raw.partition("|")
        parsed = datetime.fromisoformat(stamp)
        parsed_id = uuid.UUID(document_id)
    except ValueError as exc:
        raise ValidationError("Invalid cursor", errors=[{"rule": "cursor"}]) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed, parsed_id


@storage_retry
def list_documents(
    db: Session,
    *,
    status: Optional[DocumentStatus],
    cursor: Optional[str],
    limit: int,
) -> tuple[list[AccountingDocument], Optional[str], bool]:
    """Newest first; documents sharing a timestamp are ordered by id."""
    q = db.query(AccountingDocument)
    if status:
        q = q.filter(AccountingDocument.status == status.value)
    if cursor:
        created_at, document_id = decode_cursor(cursor)
        q = q.filter(
            or_(
                AccountingDocument.created_at < created_at,
                and_(AccountingDocument.created_at == created_at, AccountingDocument.id < document_id),
            )
        )

    rows = (
        q.order_by(desc(AccountingDocument.created_at), desc(AccountingDocument.id))
        .limit(limit + 1)
        .all()
    )
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = None
    if has_more and items and items[-1].created_at:
        next_cursor = encode_cursor(items[-1].created_at, items[-1].id)
    return items, next_cursor, has_more
