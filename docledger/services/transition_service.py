import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from docledger.core.config import get_settings
from docledger.core.errors import ConflictError, DocumentLocked, InvalidTransition
from docledger.models.accounting import AccountingDocument, AuditLog, ProposedEntry
from docledger.schemas.document import DocumentStatus
from docledger.schemas.ledger import EntryStatus
from docledger.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    DocumentStatus.UPLOADED: [DocumentStatus.CLASSIFYING],
    DocumentStatus.CLASSIFYING: [
        DocumentStatus.UNRECOGNIZED,
        DocumentStatus.PENDING_REVIEW,
        DocumentStatus.CATEGORIZED,
    ],
    DocumentStatus.UNRECOGNIZED: [DocumentStatus.PENDING_REVIEW, DocumentStatus.CATEGORIZED],
    DocumentStatus.PENDING_REVIEW: [DocumentStatus.CATEGORIZED, DocumentStatus.POSTED],
    DocumentStatus.CATEGORIZED: [DocumentStatus.POSTED],
    DocumentStatus.POSTED: [],
}

ENTRY_TRANSITIONS = {
    EntryStatus.DRAFT: [EntryStatus.VALIDATED, EntryStatus.REJECTED],
    EntryStatus.VALIDATED: [EntryStatus.POSTED, EntryStatus.REJECTED],
    EntryStatus.POSTED: [],
    EntryStatus.REJECTED: [],
}

REDACTION_FALLBACK_FIELDS = {"vendor_tax_id"}
_FIELD_VALUE_KEYS = {"old_value", "new_value", "value", "extracted_value", "corrected_value"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _redact(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        # Field payloads name the field ({"field_name": ..., "new_value": ...}).
        field_name = value.get("field_name")
        named_secret = isinstance(field_name, str) and field_name.lower() in redact_keys
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            elif named_secret and key in _FIELD_VALUE_KEYS and item is not None:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    redact_keys = {item.lower() for item in settings.audit_redaction_fields} or set(REDACTION_FALLBACK_FIELDS)
    old_value = _redact(old_value, redact_keys)
    new_value = _redact(new_value, redact_keys)
    if metadata is not None:
        metadata = _redact(metadata, redact_keys)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
        audit_meta=metadata,
    )
    db.add(log)
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def document_snapshot(doc: AccountingDocument) -> dict[str, Any]:
    return {
        "status": doc.status,
        "document_type": doc.document_type,
        "unrecognized_reason": doc.unrecognized_reason,
    }


def is_allowed(current: DocumentStatus, new: DocumentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, [])


def compare_and_set_status(
    db: Session,
    document: AccountingDocument,
    *,
    expected: DocumentStatus,
    new_status: DocumentStatus,
    values: Optional[dict[str, Any]] = None,
) -> None:
    """Write ``new_status`` only if the stored status still equals ``expected``.

    The UPDATE is conditional on the status column, so two reviewers racing on
    the same document cannot both transition it. Raises ``ConflictError`` when
    the row moved underneath us.
    """
    changes = dict(values or {})
    changes["status"] = new_status.value
    changes["status_changed_at"] = _now()
    updated = (
        db.query(AccountingDocument)
        .filter(
            AccountingDocument.id == document.id,
            AccountingDocument.status == expected.value,
        )
        .update(changes, synchronize_session=False)
    )
    if updated != 1:
        db.expire(document)
        raise ConflictError(
            f"Document {document.id} changed status concurrently; re-fetch and retry",
            errors=[{"rule": "stale_status", "expected": expected.value}],
        )
    db.expire(document)


def apply_transition(
    db: Session,
    *,
    document: AccountingDocument,
    new_status: DocumentStatus,
    actor_type: str,
    actor_id: Optional[str],
    values: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    current = DocumentStatus(document.status)

    if new_status == current:
        return False

    if current == DocumentStatus.POSTED:
        raise DocumentLocked(f"Document {document.id} is posted and locked")

    if not is_allowed(current, new_status):
        raise InvalidTransition(
            f"Transition {current} -> {new_status} is not allowed",
            errors=[{"rule": "transition", "from": current.value, "to": new_status.value}],
        )

    old_value = document_snapshot(document)
    compare_and_set_status(db, document, expected=current, new_status=new_status, values=values)

    create_audit_log(
        db,
        entity_type="document",
        entity_id=str(document.id),
        action="DOCUMENT_STATUS_CHANGE",
        old_value=old_value,
        new_value=document_snapshot(document),
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata=metadata,
    )
    return True


def apply_entry_transition(
    db: Session,
    *,
    entry: ProposedEntry,
    new_status: EntryStatus,
    values: Optional[dict[str, Any]] = None,
) -> None:
    current = EntryStatus(entry.status)
    if new_status not in ENTRY_TRANSITIONS.get(current, []):
        raise InvalidTransition(
            f"Entry transition {current} -> {new_status} is not allowed",
            errors=[{"rule": "transition", "from": current.value, "to": new_status.value}],
        )
    changes = dict(values or {})
    changes["status"] = new_status.value
    updated = (
        db.query(ProposedEntry)
        .filter(ProposedEntry.id == entry.id, ProposedEntry.status == current.value)
        .update(changes, synchronize_session=False)
    )
    if updated != 1:
        db.expire(entry)
        raise ConflictError(
            f"Entry {entry.id} changed status concurrently; re-fetch and retry",
            errors=[{"rule": "stale_status", "expected": current.value}],
        )
    db.expire(entry)
