import os
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from docledger.core.auth import CurrentUser, get_current_user
from docledger.core.config import get_settings
from docledger.core.dependencies import get_db
from docledger.main import app
from docledger.models.accounting import Base
from tests.helpers import MOCK_AI_ENV, make_document, make_engine, seed_chart

API = "/api/v1"
RECEIPT_TEXT = "Corner Shop\nvendor_name: Corner Shop\nreceipt_date: 2026-03-05\ntotal_amount: 1,250\n"


class PipelineApiTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_engine()
        db = self.SessionLocal()
        seed_chart(db)
        db.close()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="ACCOUNTANT")

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user

        env = patch.dict(os.environ, MOCK_AI_ENV)
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()

        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _as(self, role):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role=role)

    def _upload(self, **overrides):
        payload = {"original_filename": "receipt-0042.jpg", "content_text": RECEIPT_TEXT, **overrides}
        resp = self.client.post(f"{API}/documents", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def _classified_with_fields(self):
        doc = self._upload()
        self.assertEqual(self.client.post(f"{API}/documents/{doc['id']}/classify").status_code, 200)
        self.assertEqual(self.client.post(f"{API}/documents/{doc['id']}/extract").status_code, 200)
        return doc["id"]

    def test_receipt_from_upload_to_reports(self):
        doc = self._upload()
        self.assertEqual(doc["status"], "UPLOADED")
        self.assertEqual(doc["uploaded_by"], self.current_user.id)
        doc_id = doc["id"]

        resp = self.client.post(f"{API}/documents/{doc_id}/classify")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "CATEGORIZED")
        self.assertEqual(resp.json()["document_type"], "receipt")

        resp = self.client.post(f"{API}/documents/{doc_id}/extract")
        self.assertEqual(resp.status_code, 200, resp.text)
        extraction = resp.json()
        self.assertEqual(sorted(extraction["created_fields"]), ["receipt_date", "total_amount", "vendor_name"])
        self.assertIn("currency", extraction["gaps"])

        resp = self.client.get(f"{API}/documents/{doc_id}/fields")
        self.assertEqual(resp.status_code, 200)
        listing = resp.json()
        self.assertEqual(len(listing["items"]), 3)
        self.assertAlmostEqual(listing["field_confidence"], 0.9)
        total = next(f for f in listing["items"] if f["field_name"] == "total_amount")
        self.assertEqual(total["final_value"], "1,250")

        resp = self.client.post(
            f"{API}/documents/{doc_id}/fields/total_amount/correct",
            json={"value": "1250.00", "note": "thousands separator", "version": total["version"]},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        corrected = resp.json()
        self.assertEqual(corrected["final_value"], "1250.00")
        self.assertTrue(corrected["is_verified"])
        self.assertFalse(corrected["needs_review"])

        resp = self.client.post(f"{API}/documents/{doc_id}/fields/receipt_date/verify")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertTrue(resp.json()["is_verified"])

        resp = self.client.post(f"{API}/documents/{doc_id}/entries")
        self.assertEqual(resp.status_code, 201, resp.text)
        entry = resp.json()
        self.assertEqual(entry["total_debit"], entry["total_credit"])
        self.assertEqual([line["account_code"] for line in entry["lines"]], ["1000", "6000"])

        resp = self.client.post(f"{API}/entries/{entry['id']}/validate")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "VALIDATED")

        resp = self.client.post(f"{API}/entries/{entry['id']}/post")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["sequence_number"], 1)
        self.assertEqual(self.client.get(f"{API}/documents/{doc_id}").json()["status"], "POSTED")

        resp = self.client.post(f"{API}/documents/{doc_id}/fields/total_amount/correct", json={"value": "1.00"})
        self.assertEqual(resp.status_code, 423)
        self.assertEqual(resp.json()["detail"]["kind"], "document_locked")

        history = self.client.get(f"{API}/documents/{doc_id}/history").json()["items"]
        self.assertEqual([(h["old_value"], h["new_value"]) for h in history], [("1,250", "1250.00")])

        period = {"period_start": "2026-03-01", "period_end": "2026-03-31"}
        resp = self.client.get(f"{API}/reports/INCOME_STATEMENT", params=period)
        self.assertEqual(resp.status_code, 200, resp.text)
        report = resp.json()
        self.assertEqual(report["cached_data"]["total_expenses"], "1250.00")
        self.assertEqual(report["view_count"], 1)
        self.assertIsNone(report["is_balanced"])

        balance = self.client.get(f"{API}/reports/BALANCE_SHEET", params=period).json()
        self.assertTrue(balance["is_balanced"])

    def test_errors_carry_kind_message_and_rules(self):
        resp = self.client.get(f"{API}/documents/{uuid.uuid4()}")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"]["kind"], "not_found")

        doc_id = self._classified_with_fields()
        resp = self.client.post(
            f"{API}/documents/{doc_id}/fields/receipt_date/correct", json={"value": "March 5th"}
        )
        self.assertEqual(resp.status_code, 422)
        detail = resp.json()["detail"]
        self.assertEqual(detail["kind"], "invalid_value")
        self.assertEqual(detail["errors"][0]["expected"], "date")
        self.assertTrue(detail["message"])

        resp = self.client.post(f"{API}/documents/{doc_id}/entries")
        self.assertEqual(resp.status_code, 422)
        rules = sorted(e["rule"] for e in resp.json()["detail"]["errors"])
        self.assertEqual(rules, ["unverified_field", "unverified_field"])

        resp = self.client.post(
            f"{API}/documents/{doc_id}/fields/total_amount/correct", json={"value": "1250.00", "version": 7}
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["kind"], "conflict")

    def test_unbalanced_lines_fail_validation_over_http(self):
        doc_id = self._classified_with_fields()
        resp = self.client.post(f"{API}/documents/{doc_id}/entries", json={"accept_low_confidence": True})
        self.assertEqual(resp.status_code, 201, resp.text)
        entry = resp.json()
        self.assertTrue(entry["low_confidence_override"])

        resp = self.client.put(
            f"{API}/entries/{entry['id']}/lines",
            json={
                "lines": [
                    {"account_code": "1000", "debit": "100.00"},
                    {"account_code": "4000", "credit": "99.99"},
                ]
            },
        )
        self.assertEqual(resp.status_code, 200, resp.text)

        resp = self.client.post(f"{API}/entries/{entry['id']}/validate")
        self.assertEqual(resp.status_code, 422)
        errors = resp.json()["detail"]["errors"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["rule"], "unbalanced")

        stored = self.client.get(f"{API}/entries/{entry['id']}").json()
        self.assertEqual(stored["status"], "DRAFT")
        self.assertEqual(stored["validation_errors"], errors)

    def test_roles_gate_ledger_actions(self):
        doc_id = self._classified_with_fields()
        self._as("REVIEWER")
        resp = self.client.post(f"{API}/documents/{doc_id}/entries", json={"accept_low_confidence": True})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"]["kind"], "forbidden")

        self._as("ACCOUNTANT")
        entry = self.client.post(f"{API}/documents/{doc_id}/entries", json={"accept_low_confidence": True}).json()

        self._as("REVIEWER")
        self.assertEqual(self.client.get(f"{API}/entries/{entry['id']}").status_code, 200)
        self.assertEqual(self.client.post(f"{API}/entries/{entry['id']}/post").status_code, 403)
        resp = self.client.post(f"{API}/entries/{entry['id']}/reject", json={"reason": "nope"})
        self.assertEqual(resp.status_code, 403)

        resp = self.client.post(f"{API}/entries/{entry['id']}/post")
        self.assertEqual(resp.json()["detail"]["errors"], [{"rule": "role", "required": ["ACCOUNTANT", "ADMIN"]}])

        self._as("CLIENT")
        self.assertEqual(self.client.get(f"{API}/documents").status_code, 403)

    def test_list_documents_pages_newest_first(self):
        db = self.SessionLocal()
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        ids = [str(make_document(db, status="UPLOADED", created_at=base + timedelta(minutes=i)).id) for i in range(3)]
        make_document(db, status="POSTED", created_at=base - timedelta(days=1))
        db.close()

        resp = self.client.get(f"{API}/documents", params={"status": "UPLOADED", "limit": 2})
        self.assertEqual(resp.status_code, 200)
        page = resp.json()
        self.assertEqual([d["id"] for d in page["items"]], [ids[2], ids[1]])
        self.assertTrue(page["has_more"])

        resp = self.client.get(
            f"{API}/documents", params={"status": "UPLOADED", "limit": 2, "cursor": page["next_cursor"]}
        )
        page = resp.json()
        self.assertEqual([d["id"] for d in page["items"]], [ids[0]])
        self.assertFalse(page["has_more"])
        self.assertIsNone(page["next_cursor"])

        resp = self.client.get(f"{API}/documents", params={"cursor": "not-a-cursor"})
        self.assertEqual(resp.status_code, 422)

    def test_documents_sharing_a_timestamp_are_not_skipped(self):
        db = self.SessionLocal()
        stamp = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
        ids = {str(make_document(db, status="UPLOADED", created_at=stamp).id) for _ in range(5)}
        db.close()

        seen, cursor = [], None
        while True:
            params = {"status": "UPLOADED", "limit": 2}
            if cursor:
                params["cursor"] = cursor
            page = self.client.get(f"{API}/documents", params=params).json()
            seen.extend(d["id"] for d in page["items"])
            cursor = page["next_cursor"]
            if not page["has_more"]:
                break

        self.assertEqual(len(seen), 5)
        self.assertEqual(set(seen), ids)
        self.assertEqual(seen, sorted(seen, reverse=True))

    def test_classify_without_a_provider_is_service_unavailable(self):
        doc = self._upload()
        with patch.dict(os.environ, {"AI_CLASSIFY_PROVIDER": ""}):
            get_settings.cache_clear()
            resp = self.client.post(f"{API}/documents/{doc['id']}/classify")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["detail"]["kind"], "external_service_error")
        self.assertEqual(self.client.get(f"{API}/documents/{doc['id']}").json()["status"], "UPLOADED")

    def test_batch_reclassify_endpoint(self):
        db = self.SessionLocal()
        pending = make_document(db, status="PENDING_REVIEW")
        posted = make_document(db, status="POSTED")
        db.close()

        resp = self.client.post(
            f"{API}/batch/reclassify",
            json={"document_ids": [str(pending.id), str(posted.id)], "target_status": "CATEGORIZED"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual((body["total"], body["succeeded"], body["failed"]), (2, 1, 1))
        self.assertEqual(body["results"][1]["error_kind"], "document_locked")

    def test_report_for_unknown_type_is_rejected(self):
        resp = self.client.get(
            f"{API}/reports/CASH_FLOW", params={"period_start": "2026-01-01", "period_end": "2026-01-31"}
        )
        self.assertEqual(resp.status_code, 422)


class StorageUnavailableTests(unittest.TestCase):
    def test_missing_database_is_service_unavailable(self):
        app.dependency_overrides[get_current_user] = lambda: CurrentUser(id="u1", role="ADMIN")
        try:
            with TestClient(app) as client:
                with patch("docledger.core.dependencies.SessionLocal", None):
                    resp = client.get(f"{API}/documents")
        finally:
            app.dependency_overrides.clear()
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["detail"]["errors"], [{"rule": "storage_not_configured"}])

    def test_health(self):
        with TestClient(app) as client:
            self.assertEqual(client.get("/health").json(), {"status": "ok"})
