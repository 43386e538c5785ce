import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docledger.core.config import get_settings
from docledger.core.errors import ConflictError, DocumentLocked, InvalidTransition
from docledger.core.storage import storage_retry
from docledger.models.accounting import AccountingDocument, ExtractedField, FieldCorrection
from docledger.schemas.document import DocumentStatus, FieldName
from docledger.services.document_service import get_document, get_field
from docledger.services.field_shapes import validate_value
from docledger.services.transition_service import apply_transition, create_audit_log

logger = logging.getLogger(__name__)

# Statuses in which field values can be edited by a reviewer.
EDITABLE_STATUSES = {
    DocumentStatus.UNRECOGNIZED,
    DocumentStatus.PENDING_REVIEW,
    DocumentStatus.CATEGORIZED,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_editable(document: AccountingDocument) -> None:
    status = DocumentStatus(document.status)
    if status == DocumentStatus.POSTED:
        raise DocumentLocked(f"Document {document.id} is posted and locked")
    if status not in EDITABLE_STATUSES:
        raise InvalidTransition(
            f"Fields of a {status.value} document cannot be edited",
            errors=[{"rule": "editable_status", "status": status.value}],
        )


def _compare_and_set_field(
    db: Session,
    field: ExtractedField,
    *,
    expected_version: Optional[int],
    changes: dict,
) -> None:
    """Write ``changes`` only if the field version is still the one read.

    ``expected_version`` defaults to the version loaded in this session, so
    a write racing another session's write still fails instead of silently
    overwriting it.
    """
    version = field.version if expected_version is None else expected_version
    values = dict(changes)
    values["version"] = version + 1
    values["updated_at"] = _now()
    updated = (
        db.query(ExtractedField)
        .filter(ExtractedField.id == field.id, ExtractedField.version == version)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.expire(field)
        raise ConflictError(
            f"Field {field.field_name} changed since version {version}; re-fetch and retry",
            errors=[{"rule": "stale_version", "field": field.field_name, "expected_version": version}],
        )
    db.expire(field)


def maybe_advance_document(db: Session, document: AccountingDocument, *, actor_id: Optional[str]) -> bool:
    """PENDING_REVIEW -> CATEGORIZED once no field needs review."""
    if DocumentStatus(document.status) != DocumentStatus.PENDING_REVIEW:
        return False
    threshold = get_settings().review_confidence_threshold
    db.expire(document, ["fields"])
    if any(f.needs_review(threshold) for f in document.fields):
        return False
    return apply_transition(
        db,
        document=document,
        new_status=DocumentStatus.CATEGORIZED,
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata={"trigger": "review_complete"},
    )


@storage_retry
def correct_field(
    db: Session,
    document_id: str,
    field_name: FieldName,
    new_value: str,
    *,
    actor_id: Optional[str],
    note: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> ExtractedField:
    document = get_document(db, document_id)
    _ensure_editable(document)
    field = get_field(db, document, field_name.value)
    cleaned = validate_value(field_name, new_value)
    old_value = field.final_value
    now = _now()

    _compare_and_set_field(
        db,
        field,
        expected_version=expected_version,
        changes={
            "corrected_value": cleaned,
            "is_verified": True,
            "verified_by": actor_id,
            "verified_at": now,
        },
    )
    db.add(
        FieldCorrection(
            field_id=field.id,
            document_id=document.id,
            field_name=field_name.value,
            old_value=old_value,
            new_value=cleaned,
            actor_id=actor_id,
            note=note,
            created_at=now,
        )
    )
    create_audit_log(
        db,
        entity_type="field",
        entity_id=str(field.id),
        action="FIELD_CORRECTED",
        old_value={"field_name": field_name.value, "value": old_value},
        new_value={"field_name": field_name.value, "value": cleaned},
        actor_type="USER",
        actor_id=actor_id,
        metadata={"document_id": str(document.id), "note": note},
    )
    maybe_advance_document(db, document, actor_id=actor_id)
    db.commit()
    db.refresh(field)
    logger.info("Field %s of document %s corrected (v%s)", field_name.value, document.id, field.version)
    return field


@storage_retry
def verify_field(
    db: Session,
    document_id: str,
    field_name: FieldName,
    *,
    actor_id: Optional[str],
    expected_version: Optional[int] = None,
) -> ExtractedField:
    document = get_document(db, document_id)
    _ensure_editable(document)
    field = get_field(db, document, field_name.value)

    _compare_and_set_field(
        db,
        field,
        expected_version=expected_version,
        changes={"is_verified": True, "verified_by": actor_id, "verified_at": _now()},
    )
    create_audit_log(
        db,
        entity_type="field",
        entity_id=str(field.id),
        action="FIELD_VERIFIED",
        old_value=None,
        new_value={"field_name": field_name.value, "is_verified": True},
        actor_type="USER",
        actor_id=actor_id,
        metadata={"document_id": str(document.id)},
    )
    maybe_advance_document(db, document, actor_id=actor_id)
    db.commit()
    db.refresh(field)
    return field


@storage_retry
def create_manual_field(
    db: Session,
    document_id: str,
    field_name: FieldName,
    value: str,
    *,
    actor_id: Optional[str],
    note: Optional[str] = None,
) -> ExtractedField:
    """Fill an extraction gap by hand; the value counts as verified."""
    document = get_document(db, document_id)
    _ensure_editable(document)
    cleaned = validate_value(field_name, value)
    now = _now()

    field = ExtractedField(
        document_id=document.id,
        field_name=field_name.value,
        extracted_value=None,
        corrected_value=cleaned,
        confidence=1.0,
        is_verified=True,
        verified_by=actor_id,
        verified_at=now,
    )
    db.add(field)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            f"Field {field_name.value} already exists on document {document_id}; correct it instead",
            errors=[{"rule": "duplicate_field", "field": field_name.value}],
        ) from exc

    db.add(
        FieldCorrection(
            field_id=field.id,
            document_id=document.id,
            field_name=field_name.value,
            old_value=None,
            new_value=cleaned,
            actor_id=actor_id,
            note=note,
            created_at=now,
        )
    )
    create_audit_log(
        db,
        entity_type="field",
        entity_id=str(field.id),
        action="FIELD_ENTERED_MANUALLY",
        old_value=None,
        new_value={"field_name": field_name.value, "value": cleaned},
        actor_type="USER",
        actor_id=actor_id,
        metadata={"document_id": str(document.id), "note": note},
    )
    maybe_advance_document(db, document, actor_id=actor_id)
    db.commit()
    db.refresh(field)
    return field


def correction_history(db: Session, document_id: str) -> list[FieldCorrection]:
    document = get_document(db, document_id)
    return (
        db.query(FieldCorrection)
        .filter(FieldCorrection.document_id == document.id)
        .order_by(FieldCorrection.created_at.asc(), FieldCorrection.id.asc())
        .all()
    )
