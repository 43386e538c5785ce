import asyncio
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from docledger.core.config import get_settings
from docledger.core.errors import ClassificationFailure, DocumentLocked, ExternalServiceError
from docledger.models.accounting import AuditLog, Base
from docledger.services.ai.classify.contracts import AIClassificationResult
from docledger.services.ai.common import router as ai_router
from docledger.services.classification_service import classification_lease, classify_document, decide_outcome
from tests.helpers import ScriptedProvider, make_document, make_engine, mock_ai, scripted_provider


def _result(**kwargs):
    return AIClassificationResult.model_validate({"document_type": "receipt", "confidence": 0.9, **kwargs})


@pytest.mark.parametrize(
    "confidence,status",
    [(0.95, "CATEGORIZED"), (0.70, "CATEGORIZED"), (0.69, "PENDING_REVIEW"), (0.30, "PENDING_REVIEW")],
)
def test_decide_outcome_routes_by_threshold(confidence, status):
    outcome = decide_outcome(_result(confidence=confidence), get_settings())
    assert outcome.status.value == status
    assert outcome.document_type.value == "receipt"


@pytest.mark.parametrize(
    "kwargs,reason",
    [
        ({"confidence": 0.29}, "low_confidence"),
        ({"document_type": "parking_ticket"}, "unknown_type"),
        ({"document_type": None}, "unknown_type"),
        ({"reason": "unsupported_language"}, "unsupported_language"),
        ({"reason": "incomplete_image", "confidence": 0.99}, "incomplete_image"),
    ],
)
def test_decide_outcome_failures(kwargs, reason):
    with pytest.raises(ClassificationFailure) as exc:
        decide_outcome(_result(**kwargs), get_settings())
    assert exc.value.reason == reason


class ClassifyDocumentTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_engine()
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _upload(self, **kwargs):
        return make_document(self.db, status="UPLOADED", document_type=None, **kwargs)

    def _actions(self, doc):
        rows = self.db.query(AuditLog).filter(AuditLog.entity_id == str(doc.id)).all()
        return [row.action for row in rows]

    def test_high_confidence_is_categorized(self):
        doc = self._upload()
        with scripted_provider({"document_type": "receipt", "confidence": 0.93, "language": "en"}):
            doc = asyncio.run(classify_document(self.db, str(doc.id), actor_id="u1"))

        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertEqual(doc.document_type, "receipt")
        self.assertAlmostEqual(doc.ai_confidence_score, 0.93)
        self.assertEqual(doc.detected_language, "en")
        self.assertIsNone(doc.unrecognized_reason)
        actions = self._actions(doc)
        self.assertIn("AI_DOCUMENT_CLASSIFIED", actions)
        self.assertEqual(actions.count("DOCUMENT_STATUS_CHANGE"), 2)

    def test_mid_confidence_goes_to_review(self):
        doc = self._upload()
        with scripted_provider({"document_type": "purchase_invoice", "confidence": 0.5, "warnings": ["glare"]}):
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(doc.status, "PENDING_REVIEW")
        self.assertEqual(doc.ai_warnings, ["glare"])

    def test_low_confidence_is_unrecognized_with_reason(self):
        doc = self._upload()
        with scripted_provider({"document_type": "receipt", "confidence": 0.1}):
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(doc.status, "UNRECOGNIZED")
        self.assertEqual(doc.unrecognized_reason, "low_confidence")
        self.assertIsNone(doc.document_type)
        self.assertIn("DOCUMENT_CLASSIFICATION_FAILED", self._actions(doc))

    def test_unreadable_answer_is_unknown_type(self):
        doc = self._upload()
        with scripted_provider("I think this is a receipt"):
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(doc.status, "UNRECOGNIZED")
        self.assertEqual(doc.unrecognized_reason, "unknown_type")

    def test_service_timeout_is_recorded_and_raised(self):
        doc = self._upload()
        with scripted_provider(asyncio.TimeoutError()) as provider:
            with self.assertRaises(ExternalServiceError):
                asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(len(provider.prompts), get_settings().external_retry_attempts)

        self.db.expire_all()
        self.db.refresh(doc)
        self.assertEqual(doc.status, "UNRECOGNIZED")
        self.assertEqual(doc.unrecognized_reason, "service_timeout")
        self.assertIn("AI_EXTERNAL_SERVICE_ERROR", self._actions(doc))

    def test_already_classified_is_not_reclassified_without_force(self):
        doc = make_document(self.db, status="CATEGORIZED")
        with scripted_provider({"document_type": "bank_statement", "confidence": 0.99}) as provider:
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(provider.prompts, [])
        self.assertEqual(doc.document_type, "receipt")

    def test_forced_rerun_never_moves_backwards(self):
        doc = make_document(self.db, status="CATEGORIZED")
        with scripted_provider({"document_type": "receipt", "confidence": 0.5}):
            doc = asyncio.run(classify_document(self.db, str(doc.id), force=True))
        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertIn("reclassified_as_pending_review_ignored", doc.ai_warnings)

    def test_forced_rerun_can_recover_unrecognized(self):
        doc = make_document(self.db, status="UNRECOGNIZED", document_type=None)
        with scripted_provider({"document_type": "expense_claim", "confidence": 0.8}):
            doc = asyncio.run(classify_document(self.db, str(doc.id), force=True))
        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertEqual(doc.document_type, "expense_claim")

    def test_forced_failure_on_categorized_only_annotates(self):
        doc = make_document(self.db, status="CATEGORIZED")
        with scripted_provider({"document_type": "receipt", "confidence": 0.05}):
            doc = asyncio.run(classify_document(self.db, str(doc.id), force=True))
        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertEqual(doc.document_type, "receipt")
        self.assertIn("low_confidence", doc.ai_warnings)
        self.assertIn("DOCUMENT_CLASSIFICATION_NOTED", self._actions(doc))

    def test_posted_document_is_locked(self):
        doc = make_document(self.db, status="POSTED")
        with scripted_provider({"document_type": "receipt", "confidence": 0.9}):
            with self.assertRaises(DocumentLocked):
                asyncio.run(classify_document(self.db, str(doc.id), force=True))

    def test_hosted_scan_is_sent_to_the_provider(self):
        doc = self._upload(content_ref="https://files.example.com/scan-7.jpg")
        with scripted_provider({"document_type": "receipt", "confidence": 0.9}) as provider:
            asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(provider.image_urls, ["https://files.example.com/scan-7.jpg"])

    def test_mock_provider_classifies_by_content(self):
        doc = self._upload(filename="march-statement.pdf", content_text="Bank statement March")
        with mock_ai():
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertEqual(doc.document_type, "bank_statement")

    def test_unconfigured_provider_leaves_document_uploaded(self):
        doc = self._upload(content_text="Bank statement March")
        with patch.dict(os.environ, {"AI_CLASSIFY_PROVIDER": ""}):
            get_settings.cache_clear()
            with self.assertRaises(ExternalServiceError) as ctx:
                asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(ctx.exception.errors[0]["rule"], "provider_not_configured")

        self.db.expire_all()
        self.db.refresh(doc)
        self.assertEqual(doc.status, "UPLOADED")
        self.assertIsNone(doc.document_type)
        self.assertEqual(self._actions(doc), [])

    def test_classified_document_is_skipped_without_a_provider(self):
        doc = make_document(self.db, status="CATEGORIZED")
        with patch.dict(os.environ, {"AI_CLASSIFY_PROVIDER": ""}):
            get_settings.cache_clear()
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(doc.status, "CATEGORIZED")

    def test_abandoned_classifying_document_is_resumed(self):
        doc = make_document(
            self.db,
            status="CLASSIFYING",
            document_type=None,
            status_changed_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        with scripted_provider({"document_type": "receipt", "confidence": 0.9}) as provider:
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(len(provider.prompts), 1)
        self.assertEqual(doc.status, "CATEGORIZED")
        self.assertEqual(doc.document_type, "receipt")
        self.assertIn("DOCUMENT_CLASSIFICATION_RESUMED", self._actions(doc))

    def test_running_classification_is_not_duplicated(self):
        doc = make_document(
            self.db,
            status="CLASSIFYING",
            document_type=None,
            status_changed_at=datetime.now(timezone.utc) - timedelta(seconds=5),
        )
        with scripted_provider({"document_type": "receipt", "confidence": 0.9}) as provider:
            doc = asyncio.run(classify_document(self.db, str(doc.id)))
        self.assertEqual(provider.prompts, [])
        self.assertEqual(doc.status, "CLASSIFYING")
        self.assertNotIn("DOCUMENT_CLASSIFICATION_RESUMED", self._actions(doc))

    def test_lease_covers_every_attempt(self):
        config = ai_router.ResolvedConfig(
            provider=ScriptedProvider([""]),
            model="m",
            temperature=0.0,
            max_tokens=10,
            timeout_seconds=10.0,
            max_attempts=3,
            backoff_seconds=1.0,
        )
        self.assertEqual(classification_lease(config), timedelta(seconds=10 + 1 + 10 + 2 + 10 + 4))
