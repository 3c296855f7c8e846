"""
Webhook receipt store tests - raw capture, header masking, finalize-once.
"""
import uuid

import pytest

from deliveryledger.models.webhook_receipt import WebhookReceipt
from deliveryledger.services.receipts import (
    ReceiptAlreadyFinalizedError,
    ReceiptNotFoundError,
    finalize_receipt,
    find_receipts_for_message,
    record_receipt,
    sanitize_headers,
)


class TestSanitizeHeaders:
    def test_secrets_are_masked(self):
        clean = sanitize_headers({
            "Authorization": "Bearer abc",
            "Cookie": "session=1",
            "X-Hub-Signature-256": "sha256=ff",
            "Content-Type": "application/json",
        })
        assert clean["authorization"] == "***"
        assert clean["cookie"] == "***"
        assert clean["x-hub-signature-256"] == "sha256=ff"
        assert clean["content-type"] == "application/json"


class TestRecordReceipt:
    async def test_raw_body_stored_verbatim(self, db):
        body = b'{"object": "whatsapp_business_account",  "entry": []}'
        receipt = await record_receipt(
            db, "meta", "/api/v1/webhook/meta",
            {"Content-Type": "application/json", "User-Agent": "facebookexternalua"},
            body,
            source_ip="173.252.0.1",
        )
        await db.commit()

        stored = await db.get(WebhookReceipt, receipt.id)
        assert stored.raw_body == body.decode()
        assert stored.content_type == "application/json"
        assert stored.user_agent == "facebookexternalua"
        assert stored.processing_status == "received"
        assert stored.finalized_at is None

    async def test_non_utf8_body_does_not_fail(self, db):
        receipt = await record_receipt(db, "generic", "/api/v1/webhook/generic", {}, b"\xff\xfe{")
        assert receipt.raw_body is not None


class TestFinalizeReceipt:
    async def test_finalize_sets_outcome(self, db):
        receipt = await record_receipt(db, "meta", "/api/v1/webhook/meta", {}, b"{}")
        event_id = uuid.uuid4()

        finalized = await finalize_receipt(
            db, receipt.id,
            response_code=200,
            response_message="ok",
            parsed_successfully=True,
            signature_valid=True,
            linked_event_id=event_id,
            detected_provider="meta",
            processing_time_ms=12,
        )

        assert finalized.processing_status == "completed"
        assert finalized.message_event_id == event_id
        assert finalized.finalized_at is not None

    @pytest.mark.parametrize("code,status", [(401, "rejected"), (400, "failed"), (200, "completed")])
    async def test_status_derived_from_response_code(self, db, code, status):
        receipt = await record_receipt(db, "meta", "/api/v1/webhook/meta", {}, b"{}")
        finalized = await finalize_receipt(
            db, receipt.id, response_code=code, response_message="",
            parsed_successfully=code != 400, signature_valid=code != 401,
        )
        assert finalized.processing_status == status

    async def test_second_finalize_raises_and_keeps_first_outcome(self, db):
        receipt = await record_receipt(db, "meta", "/api/v1/webhook/meta", {}, b"{}")
        await finalize_receipt(
            db, receipt.id, response_code=401, response_message="bad signature",
            parsed_successfully=True, signature_valid=False,
        )

        with pytest.raises(ReceiptAlreadyFinalizedError):
            await finalize_receipt(
                db, receipt.id, response_code=200, response_message="ok",
                parsed_successfully=True, signature_valid=True,
            )

        stored = await db.get(WebhookReceipt, receipt.id)
        assert stored.response_code == 401
        assert stored.signature_valid is False

    async def test_unknown_receipt(self, db):
        with pytest.raises(ReceiptNotFoundError):
            await finalize_receipt(
                db, uuid.uuid4(), response_code=200, response_message="",
                parsed_successfully=True, signature_valid=None,
            )


class TestFindReceipts:
    async def test_matches_body_or_linked_event(self, db):
        event_id = uuid.uuid4()
        by_body = await record_receipt(db, "meta", "/x", {}, b'{"id": "wamid.ABC_1"}')
        by_link = await record_receipt(db, "meta", "/x", {}, b'{"id": "something-else"}')
        await finalize_receipt(
            db, by_link.id, response_code=200, response_message="ok",
            parsed_successfully=True, signature_valid=None, linked_event_id=event_id,
        )
        await record_receipt(db, "meta", "/x", {}, b'{"id": "wamid.OTHER"}')
        await db.commit()

        found = await find_receipts_for_message(db, "wamid.ABC_1", [event_id])
        assert {r.id for r in found} == {by_body.id, by_link.id}
