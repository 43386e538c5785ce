"""
Unit tests for transition_service: state machines, audit redaction, alerting.

Covers:
  - _redact: nested dict/list masking, field payloads naming a redacted field
  - apply_transition: happy path, no-op, disallowed transitions, posted lock, stale status
  - apply_entry_transition: entry lifecycle table
  - create_audit_log: redaction applied, alert tracker fed
"""

from __future__ import annotations

import os
import unittest
from unittest.mock import patch

import pytest

from docledger.core.config import get_settings
from docledger.core.errors import ConflictError, DocumentLocked, InvalidTransition
from docledger.models.accounting import AccountingDocument, AuditLog, Base
from docledger.schemas.document import DocumentStatus
from docledger.schemas.ledger import EntryStatus
from docledger.services.transition_service import (
    ALLOWED_TRANSITIONS,
    ENTRY_TRANSITIONS,
    _redact,
    apply_entry_transition,
    apply_transition,
    create_audit_log,
    is_allowed,
)
from docledger.utils.alerting import AuditAlertTracker, alert_tracker
from tests.helpers import make_document, make_engine, make_posted_entry

# ── helpers ──────────────────────────────────────────────────────────


def test_redact_masks_nested_keys():
    payload = {"vendor_tax_id": "LT1", "items": [{"vendor_tax_id": "LT2", "total": "1"}], "ok": None}
    assert _redact(payload, {"vendor_tax_id"}) == {
        "vendor_tax_id": "[REDACTED]",
        "items": [{"vendor_tax_id": "[REDACTED]", "total": "1"}],
        "ok": None,
    }


def test_redact_masks_values_of_named_field():
    payload = {"field_name": "VENDOR_TAX_ID", "old_value": "LT1", "new_value": None, "note": "x"}
    assert _redact(payload, {"vendor_tax_id"}) == {
        "field_name": "VENDOR_TAX_ID",
        "old_value": "[REDACTED]",
        "new_value": None,
        "note": "x",
    }
    assert _redact({"field_name": "currency", "value": "EUR"}, {"vendor_tax_id"}) == {
        "field_name": "currency",
        "value": "EUR",
    }


def test_transition_tables_only_move_forward():
    assert ALLOWED_TRANSITIONS[DocumentStatus.POSTED] == []
    assert ENTRY_TRANSITIONS[EntryStatus.POSTED] == []
    assert is_allowed(DocumentStatus.UNRECOGNIZED, DocumentStatus.CATEGORIZED)
    assert not is_allowed(DocumentStatus.CATEGORIZED, DocumentStatus.PENDING_REVIEW)
    assert not is_allowed(DocumentStatus.UPLOADED, DocumentStatus.POSTED)


def test_alert_tracker_warns_at_threshold(caplog):
    tracker = AuditAlertTracker(60, {"DOCUMENT_EXTRACTION_FAILED": 2})
    with caplog.at_level("WARNING", logger="docledger.utils.alerting"):
        tracker.record("DOCUMENT_EXTRACTION_FAILED")
        assert "ALERT" not in caplog.text
        tracker.record("DOCUMENT_EXTRACTION_FAILED", {"document_id": "d1"})
    assert "ALERT audit_action=DOCUMENT_EXTRACTION_FAILED count=2" in caplog.text
    tracker.record("FIELD_CORRECTED")
    assert tracker.count("FIELD_CORRECTED") == 0
    assert tracker.count("DOCUMENT_EXTRACTION_FAILED") == 2


def test_alert_tracker_drops_expired_buckets():
    tracker = AuditAlertTracker(60, {"DOCUMENT_EXTRACTION_FAILED": 5, "REPORT_GENERATION_FAILED": 5})
    with patch("docledger.utils.alerting.time.monotonic", return_value=1000.0):
        tracker.record("DOCUMENT_EXTRACTION_FAILED")
        tracker.record("DOCUMENT_EXTRACTION_FAILED")
    assert set(tracker._buckets) == {"DOCUMENT_EXTRACTION_FAILED"}

    with patch("docledger.utils.alerting.time.monotonic", return_value=1061.0):
        tracker.record("REPORT_GENERATION_FAILED")
        assert set(tracker._buckets) == {"REPORT_GENERATION_FAILED"}
        assert tracker.count("DOCUMENT_EXTRACTION_FAILED") == 0


class TransitionServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_engine()
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _move(self, doc, new_status, **kwargs):
        return apply_transition(
            self.db,
            document=doc,
            new_status=new_status,
            actor_type="USER",
            actor_id="u1",
            **kwargs,
        )

    def test_transition_writes_status_and_audit(self):
        doc = make_document(self.db, status="PENDING_REVIEW")
        changed = self._move(doc, DocumentStatus.CATEGORIZED, values={"notes": "ok"}, metadata={"why": "test"})
        self.db.commit()

        self.assertTrue(changed)
        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertEqual(doc.notes, "ok")
        self.assertIsNotNone(doc.status_changed_at)
        log = self.db.query(AuditLog).one()
        self.assertEqual(log.action, "DOCUMENT_STATUS_CHANGE")
        self.assertEqual(log.old_value["status"], "PENDING_REVIEW")
        self.assertEqual(log.new_value["status"], "CATEGORIZED")
        self.assertEqual(log.audit_meta, {"why": "test"})

    def test_same_status_is_a_noop(self):
        doc = make_document(self.db, status="CATEGORIZED")
        self.assertFalse(self._move(doc, DocumentStatus.CATEGORIZED))
        self.assertEqual(self.db.query(AuditLog).count(), 0)

    def test_backward_transition_is_rejected(self):
        doc = make_document(self.db, status="CATEGORIZED")
        with self.assertRaises(InvalidTransition) as ctx:
            self._move(doc, DocumentStatus.UNRECOGNIZED)
        self.assertEqual(ctx.exception.errors[0], {"rule": "transition", "from": "CATEGORIZED", "to": "UNRECOGNIZED"})

    def test_posted_document_is_locked(self):
        doc = make_document(self.db, status="POSTED")
        with self.assertRaises(DocumentLocked):
            self._move(doc, DocumentStatus.CATEGORIZED)

    def test_stale_status_is_a_conflict(self):
        doc = make_document(self.db, status="PENDING_REVIEW")
        other = self.SessionLocal()
        try:
            other.get(AccountingDocument, doc.id).status = "CATEGORIZED"
            other.commit()
        finally:
            other.close()

        # ``doc`` still believes it is PENDING_REVIEW.
        with self.assertRaises(ConflictError):
            self._move(doc, DocumentStatus.POSTED)

    def test_entry_transitions(self):
        entry = make_posted_entry(self.db, entry_date=None, sequence_number=0, status="DRAFT", lines=[])
        apply_entry_transition(self.db, entry=entry, new_status=EntryStatus.VALIDATED)
        self.db.commit()
        self.assertEqual(entry.status, "VALIDATED")
        with self.assertRaises(InvalidTransition):
            apply_entry_transition(self.db, entry=entry, new_status=EntryStatus.DRAFT)

    def test_audit_log_redacts_configured_fields(self):
        with patch.dict(os.environ, {"AUDIT_REDACTION_FIELDS": "vendor_tax_id,vendor_address"}):
            get_settings.cache_clear()
            create_audit_log(
                self.db,
                entity_type="field",
                entity_id="f1",
                action="DOCUMENT_EXTRACTION_FAILED",
                old_value={"vendor_address": "Main st 1"},
                new_value={"field_name": "vendor_tax_id", "value": "LT1"},
                actor_type="SYSTEM",
                actor_id=None,
                metadata={"vendor_address": "Main st 1"},
            )
        self.db.commit()
        log = self.db.query(AuditLog).one()
        self.assertEqual(log.old_value, {"vendor_address": "[REDACTED]"})
        self.assertEqual(log.new_value, {"field_name": "vendor_tax_id", "value": "[REDACTED]"})
        self.assertEqual(log.audit_meta, {"vendor_address": "[REDACTED]"})
        self.assertEqual(alert_tracker.count("DOCUMENT_EXTRACTION_FAILED"), 1)


@pytest.mark.parametrize("status", list(DocumentStatus))
def test_every_status_has_a_transition_row(status):
    assert status in ALLOWED_TRANSITIONS
