import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from docledger.core.errors import DocumentLocked, DomainError, InvalidTransition, ValidationError
from docledger.core.storage import storage_retry
from docledger.schemas.document import (
    BatchItemResult,
    BatchReclassifyRequest,
    BatchReclassifyResponse,
    DocumentStatus,
)
from docledger.services.document_service import get_document
from docledger.services.transition_service import apply_transition, create_audit_log, document_snapshot

logger = logging.getLogger(__name__)

BATCH_TARGETS = {DocumentStatus.PENDING_REVIEW, DocumentStatus.CATEGORIZED}


@storage_retry
def _reclassify_one(
    db: Session,
    document_id: str,
    request: BatchReclassifyRequest,
    *,
    actor_id: Optional[str],
) -> DocumentStatus:
    if request.target_status not in BATCH_TARGETS:
        raise InvalidTransition(
            f"Batch target {request.target_status.value} is not allowed",
            errors=[{"rule": "batch_target", "to": request.target_status.value}],
        )

    document = get_document(db, document_id)
    current = DocumentStatus(document.status)
    if current == DocumentStatus.POSTED:
        raise DocumentLocked(f"Document {document.id} is posted and locked")

    document_type = request.document_type.value if request.document_type else document.document_type
    if not document_type:
        raise ValidationError(
            f"Document {document.id} has no type; pass document_type",
            errors=[{"rule": "document_type_required"}],
        )

    values = {
        "document_type": document_type,
        "unrecognized_reason": None,
        "reviewed_by": actor_id,
        "reviewed_at": datetime.now(timezone.utc),
    }
    if request.notes:
        values["notes"] = request.notes
    metadata = {"batch": True, "notes": request.notes}

    changed = apply_transition(
        db,
        document=document,
        new_status=request.target_status,
        actor_type="USER",
        actor_id=actor_id,
        values=values,
        metadata=metadata,
    )
    if not changed:
        # Same status: only the category and review stamp change.
        old_value = document_snapshot(document)
        for key, value in values.items():
            setattr(document, key, value)
        db.flush()
        create_audit_log(
            db,
            entity_type="document",
            entity_id=str(document.id),
            action="DOCUMENT_RECATEGORIZED",
            old_value=old_value,
            new_value=document_snapshot(document),
            actor_type="USER",
            actor_id=actor_id,
            metadata=metadata,
        )
    db.commit()
    return request.target_status


def batch_reclassify(
    db: Session,
    request: BatchReclassifyRequest,
    *,
    actor_id: Optional[str],
) -> BatchReclassifyResponse:
    """Reclassify each document independently; failures never stop the batch.

    Every item commits or rolls back on its own, so partial completion is a
    normal outcome reported item by item.
    """
    results: list[BatchItemResult] = []
    for document_id in request.document_ids:
        try:
            status = _reclassify_one(db, document_id, request, actor_id=actor_id)
            results.append(BatchItemResult(document_id=document_id, success=True, status=status))
        except DomainError as exc:
            db.rollback()
            results.append(
                BatchItemResult(
                    document_id=document_id,
                    success=False,
                    error_kind=exc.kind,
                    reason=exc.message,
                )
            )
        except Exception as exc:
            db.rollback()
            logger.exception("Batch reclassify failed for document %s", document_id)
            results.append(
                BatchItemResult(
                    document_id=document_id,
                    success=False,
                    error_kind="internal_error",
                    reason=exc.__class__.__name__,
                )
            )

    succeeded = sum(1 for r in results if r.success)
    logger.info("Batch reclassify: %d/%d succeeded", succeeded, len(results))
    return BatchReclassifyResponse(
        results=results,
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )
