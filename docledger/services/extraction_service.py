"""Field extractor: stores per-field AI output for classified documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docledger.core.errors import ConflictError, DocumentLocked, ExternalServiceError, InvalidTransition
from docledger.models.accounting import AccountingDocument, ExtractedField
from docledger.schemas.document import EXPECTED_FIELDS, DocumentStatus, DocumentType, FieldName
from docledger.services.ai.common import router as ai_router
from docledger.services.ai.common.audit import log_ai_failure, log_ai_run
from docledger.services.ai.field_extract.service import extract_fields
from docledger.services.document_service import get_document
from docledger.services.transition_service import create_audit_log

logger = logging.getLogger(__name__)

EXTRACTABLE_STATUSES = {DocumentStatus.CATEGORIZED, DocumentStatus.PENDING_REVIEW}


@dataclass
class ExtractionSummary:
    document: AccountingDocument
    created_fields: list[str] = field(default_factory=list)
    skipped_fields: list[str] = field(default_factory=list)
    gaps: list[str] = field(default_factory=list)
    model_version: str = ""


def expected_fields(document: AccountingDocument) -> tuple[FieldName, ...]:
    if not document.document_type:
        return ()
    return EXPECTED_FIELDS.get(DocumentType(document.document_type), ())


def extraction_gaps(document: AccountingDocument) -> list[FieldName]:
    """Expected fields with no stored row, in vocabulary order."""
    present = {f.field_name for f in document.fields}
    return [name for name in expected_fields(document) if name.value not in present]


def _flag_manual_entry(db: Session, doc: AccountingDocument, *, error: str, actor_id: Optional[str]) -> None:
    warnings = list(doc.ai_warnings or [])
    if "extraction_failed" not in warnings:
        warnings.append("extraction_failed")
    doc.ai_warnings = warnings
    doc.manual_entry_required = True
    db.flush()
    create_audit_log(
        db,
        entity_type="document",
        entity_id=str(doc.id),
        action="DOCUMENT_EXTRACTION_FAILED",
        old_value=None,
        new_value={"manual_entry_required": True},
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata={"error": error},
    )


async def extract_document_fields(
    db: Session,
    document_id: str,
    *,
    actor_id: Optional[str] = None,
) -> ExtractionSummary:
    """Run extraction for a CATEGORIZED or PENDING_REVIEW document.

    Only fields expected for the document type are stored, values the service
    left empty are omitted, and a field that already exists is never
    overwritten. Provider failure leaves the classification in place, flags the
    document for manual entry, commits that flag and raises. A missing provider
    configuration raises before anything is flagged.
    """
    doc = get_document(db, document_id)
    status = DocumentStatus(doc.status)
    if status == DocumentStatus.POSTED:
        raise DocumentLocked(f"Document {doc.id} is posted and locked")
    if status not in EXTRACTABLE_STATUSES:
        raise InvalidTransition(
            f"Document {doc.id} is {status.value}; extraction needs a classified document",
            errors=[{"rule": "extractable_status", "status": status.value}],
        )

    expected = expected_fields(doc)
    present = {f.field_name for f in doc.fields}
    wanted = [name.value for name in expected if name.value not in present]
    summary = ExtractionSummary(document=doc)
    if not wanted:
        logger.info("Document %s has every expected field; extraction skipped", doc.id)
        return summary

    config = ai_router.resolve("extract")
    try:
        call = await extract_fields(
            doc.document_type,
            wanted,
            doc.original_filename,
            doc.content_ref,
            doc.content_text,
            config=config,
        )
    except ExternalServiceError as exc:
        db.rollback()
        doc = get_document(db, document_id)
        log_ai_failure(db, scope="extract", document_id=str(doc.id), error=exc.message, actor_id=actor_id)
        _flag_manual_entry(db, doc, error=exc.message, actor_id=actor_id)
        db.commit()
        raise

    summary.model_version = call.provider_result.model
    expected_names = {name.value for name in expected}
    for item in call.result.fields:
        if item.field_name not in expected_names:
            logger.info("Dropping unexpected field %r for %s document %s", item.field_name, doc.document_type, doc.id)
            continue
        if item.value is None:
            continue
        if item.field_name in present or item.field_name in summary.created_fields:
            summary.skipped_fields.append(item.field_name)
            continue
        db.add(
            ExtractedField(
                document_id=doc.id,
                field_name=item.field_name,
                extracted_value=item.value,
                confidence=item.confidence,
                bounding_box=item.bounding_box,
                is_verified=False,
            )
        )
        summary.created_fields.append(item.field_name)

    log_ai_run(
        db,
        scope="extract",
        document_id=str(doc.id),
        provider_result=call.provider_result,
        prompt_text=call.prompt,
        parsed_output={"fields": summary.created_fields},
        attempts=call.attempts,
        actor_id=actor_id,
    )

    try:
        db.commit()
    except IntegrityError as exc:
        # A concurrent extraction stored the same (document, field) first.
        db.rollback()
        raise ConflictError(
            f"Fields of document {document_id} were extracted concurrently; re-fetch",
            errors=[{"rule": "duplicate_field"}],
        ) from exc

    db.refresh(doc)
    summary.document = doc
    summary.gaps = [name.value for name in extraction_gaps(doc)]
    logger.info(
        "Extracted %d field(s) for document %s, %d gap(s)",
        len(summary.created_fields),
        doc.id,
        len(summary.gaps),
    )
    return summary
