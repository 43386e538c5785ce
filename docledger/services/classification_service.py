"""Classifier gateway: one AI call per document, routed by confidence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from docledger.core.config import Settings, get_settings
from docledger.core.errors import ClassificationFailure, DocumentLocked, ExternalServiceError
from docledger.models.accounting import AccountingDocument
from docledger.schemas.document import DocumentStatus, DocumentType, UnrecognizedReason
from docledger.services.ai.classify.contracts import AIClassificationResult
from docledger.services.ai.classify.service import classify_content
from docledger.services.ai.common import router as ai_router
from docledger.services.ai.common.audit import log_ai_failure, log_ai_run
from docledger.utils.backoff import compute_backoff
from docledger.services.ai.common.router import ResolvedConfig
from docledger.services.document_service import get_document
from docledger.services.transition_service import (
    apply_transition,
    create_audit_log,
    document_snapshot,
)

logger = logging.getLogger(__name__)

# Forward order of classification outcomes; forced runs never move left.
_OUTCOME_RANK = {
    DocumentStatus.UNRECOGNIZED: 0,
    DocumentStatus.PENDING_REVIEW: 1,
    DocumentStatus.CATEGORIZED: 2,
}

_REPORTED_REASONS = {
    UnrecognizedReason.UNSUPPORTED_LANGUAGE.value,
    UnrecognizedReason.INCOMPLETE_IMAGE.value,
}


@dataclass
class ClassificationOutcome:
    status: DocumentStatus
    document_type: DocumentType


def decide_outcome(result: AIClassificationResult, settings: Settings) -> ClassificationOutcome:
    """Route a classifier answer to a document status.

    Raises ``ClassificationFailure`` for answers the pipeline cannot use: a
    reported language/image problem, a type outside the vocabulary, or a
    confidence below the hard floor.
    """
    if result.reason in _REPORTED_REASONS:
        raise ClassificationFailure(result.reason, f"Classifier reported {result.reason}")
    try:
        document_type = DocumentType(result.document_type or "")
    except ValueError:
        raise ClassificationFailure(
            UnrecognizedReason.UNKNOWN_TYPE.value,
            f"Unsupported document type {result.document_type!r}",
        ) from None
    if result.confidence < settings.unrecognized_floor:
        raise ClassificationFailure(
            UnrecognizedReason.LOW_CONFIDENCE.value,
            f"Confidence {result.confidence:.2f} below floor {settings.unrecognized_floor:.2f}",
        )
    if result.confidence < settings.review_confidence_threshold:
        return ClassificationOutcome(DocumentStatus.PENDING_REVIEW, document_type)
    return ClassificationOutcome(DocumentStatus.CATEGORIZED, document_type)


def _merge_warnings(existing, extra: list[str]) -> list[str]:
    merged = list(existing or [])
    for item in extra:
        if item and item not in merged:
            merged.append(item)
    return merged


def _record_failure(
    db: Session,
    doc: AccountingDocument,
    *,
    reason: str,
    warnings: list[str],
    actor_id: Optional[str],
    values: Optional[dict] = None,
) -> None:
    """Move a document to UNRECOGNIZED, or only annotate it when that would go backwards."""
    current = DocumentStatus(doc.status)
    merged = _merge_warnings(doc.ai_warnings, warnings + [reason])
    if current == DocumentStatus.CLASSIFYING:
        changes = dict(values or {})
        changes.update({"unrecognized_reason": reason, "ai_warnings": merged, "document_type": None})
        apply_transition(
            db,
            document=doc,
            new_status=DocumentStatus.UNRECOGNIZED,
            actor_type="SYSTEM",
            actor_id=actor_id,
            values=changes,
            metadata={"reason": reason},
        )
    else:
        old_value = document_snapshot(doc)
        doc.ai_warnings = merged
        if current == DocumentStatus.UNRECOGNIZED:
            doc.unrecognized_reason = reason
            for key, value in (values or {}).items():
                setattr(doc, key, value)
        db.flush()
        create_audit_log(
            db,
            entity_type="document",
            entity_id=str(doc.id),
            action="DOCUMENT_CLASSIFICATION_NOTED",
            old_value=old_value,
            new_value=document_snapshot(doc),
            actor_type="SYSTEM",
            actor_id=actor_id,
            metadata={"reason": reason},
        )

    create_audit_log(
        db,
        entity_type="document",
        entity_id=str(doc.id),
        action="DOCUMENT_CLASSIFICATION_FAILED",
        old_value=None,
        new_value={"reason": reason},
        actor_type="SYSTEM",
        actor_id=actor_id,
        metadata={"reason": reason},
    )


def _record_success(
    db: Session,
    doc: AccountingDocument,
    *,
    outcome: ClassificationOutcome,
    result: AIClassificationResult,
    actor_id: Optional[str],
) -> None:
    current = DocumentStatus(doc.status)
    warnings = _merge_warnings(doc.ai_warnings if current != DocumentStatus.CLASSIFYING else [], result.warnings)
    advances = current == DocumentStatus.CLASSIFYING or _OUTCOME_RANK[outcome.status] > _OUTCOME_RANK.get(current, -1)

    if not advances:
        # A forced rerun that would not move the document forward keeps type
        # and status; only the observations are kept.
        logger.info(
            "Forced classification of %s gave %s, keeping %s",
            doc.id,
            outcome.status.value,
            current.value,
        )
        doc.ai_warnings = _merge_warnings(warnings, [f"reclassified_as_{outcome.status.value.lower()}_ignored"])
        db.flush()
        return

    apply_transition(
        db,
        document=doc,
        new_status=outcome.status,
        actor_type="SYSTEM",
        actor_id=actor_id,
        values={
            "document_type": outcome.document_type.value,
            "ai_confidence_score": result.confidence,
            "ai_warnings": warnings,
            "detected_language": result.language,
            "unrecognized_reason": None,
        },
        metadata={"confidence": result.confidence, "document_type": outcome.document_type.value},
    )


def classification_lease(config: ResolvedConfig) -> timedelta:
    """Longest time one classify call may hold a document in CLASSIFYING."""
    seconds = sum(
        config.timeout_seconds + compute_backoff(attempt, config.backoff_seconds)
        for attempt in range(1, config.max_attempts + 1)
    )
    return timedelta(seconds=seconds)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _claim_stale(
    db: Session,
    doc: AccountingDocument,
    *,
    lease: timedelta,
    actor_id: Optional[str],
) -> bool:
    """Take over a CLASSIFYING document whose previous run outlived its lease.

    The claim is a compare-and-swap on ``status_changed_at`` so only one caller
    resumes a given stale run.
    """
    changed_at = _as_utc(doc.status_changed_at)
    now = datetime.now(timezone.utc)
    if changed_at is not None and now - changed_at < lease:
        return False

    query = db.query(AccountingDocument).filter(
        AccountingDocument.id == doc.id,
        AccountingDocument.status == DocumentStatus.CLASSIFYING.value,
    )
    if doc.status_changed_at is None:
        query = query.filter(AccountingDocument.status_changed_at.is_(None))
    else:
        query = query.filter(AccountingDocument.status_changed_at == doc.status_changed_at)
    if query.update({"status_changed_at": now}, synchronize_session=False) != 1:
        db.rollback()
        return False

    create_audit_log(
        db,
        entity_type="document",
        entity_id=str(doc.id),
        action="DOCUMENT_CLASSIFICATION_RESUMED",
        old_value={"status_changed_at": changed_at.isoformat() if changed_at else None},
        new_value={"status_changed_at": now.isoformat()},
        actor_type="SYSTEM",
        actor_id=actor_id,
    )
    db.commit()
    db.expire(doc)
    logger.warning("Resuming classification of %s left in CLASSIFYING since %s", doc.id, changed_at)
    return True


async def classify_document(
    db: Session,
    document_id: str,
    *,
    force: bool = False,
    actor_id: Optional[str] = None,
) -> AccountingDocument:
    """Classify a document through the external AI service.

    A document past UPLOADED is returned unchanged unless ``force`` is set.
    The UPLOADED -> CLASSIFYING step is committed before the AI call so a
    concurrent caller loses the status compare-and-swap instead of calling the
    service twice. A document still CLASSIFYING after ``classification_lease``
    belongs to a run that died and is resumed. Provider exhaustion is recorded
    on the document, committed, and then raised as ``ExternalServiceError``.

    The provider is resolved before the document is touched, so a missing
    provider configuration raises ``ExternalServiceError`` (503) and leaves the
    status as it was.
    """
    settings = get_settings()
    doc = get_document(db, document_id)
    current = DocumentStatus(doc.status)

    if current == DocumentStatus.POSTED:
        raise DocumentLocked(f"Document {doc.id} is posted and locked")

    if not force and current not in (DocumentStatus.UPLOADED, DocumentStatus.CLASSIFYING):
        logger.info("Document %s already %s; classification skipped", doc.id, current.value)
        return doc

    config = ai_router.resolve("classify")

    if current == DocumentStatus.UPLOADED:
        apply_transition(
            db,
            document=doc,
            new_status=DocumentStatus.CLASSIFYING,
            actor_type="SYSTEM",
            actor_id=actor_id,
        )
        db.commit()
    elif current == DocumentStatus.CLASSIFYING and not force:
        if not _claim_stale(db, doc, lease=classification_lease(config), actor_id=actor_id):
            logger.info("Document %s is being classified; call skipped", doc.id)
            return get_document(db, document_id)

    try:
        call = await classify_content(doc.original_filename, doc.content_ref, doc.content_text, config=config)
    except ExternalServiceError as exc:
        db.rollback()
        doc = get_document(db, document_id)
        log_ai_failure(db, scope="classify", document_id=str(doc.id), error=exc.message, actor_id=actor_id)
        _record_failure(
            db,
            doc,
            reason=UnrecognizedReason.SERVICE_TIMEOUT.value,
            warnings=[],
            actor_id=actor_id,
        )
        db.commit()
        raise

    log_ai_run(
        db,
        scope="classify",
        document_id=str(doc.id),
        provider_result=call.provider_result,
        prompt_text=call.prompt,
        parsed_output=call.result.model_dump() if call.parsed else None,
        attempts=call.attempts,
        actor_id=actor_id,
    )

    result = call.result
    try:
        if not call.parsed:
            raise ClassificationFailure(UnrecognizedReason.UNKNOWN_TYPE.value, "Classifier answer was unreadable")
        outcome = decide_outcome(result, settings)
    except ClassificationFailure as failure:
        logger.info("Document %s not recognized: %s", doc.id, failure.reason)
        _record_failure(
            db,
            doc,
            reason=failure.reason,
            warnings=result.warnings,
            actor_id=actor_id,
            values={"ai_confidence_score": result.confidence, "detected_language": result.language},
        )
    else:
        _record_success(db, doc, outcome=outcome, result=result, actor_id=actor_id)

    db.commit()
    db.refresh(doc)
    return doc
