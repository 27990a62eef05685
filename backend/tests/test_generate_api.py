"""Integration tests for POST /api/generate and the metadata endpoints.

Tests cover:
  - 402 with payment instructions (no header, bad header, rejected payment)
  - 400 for missing title/style without settling
  - 202 success body and X-PAYMENT-RESPONSE header
  - unexpected errors still answer 402
  - GET /api/discovery and GET /api/health
"""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from pulsar.deps import get_job_store
from pulsar.main import app
from pulsar.services.job_store import MemoryJobStore
from pulsar.services.notifier import TelegramNotifier, get_notifier
from pulsar.services.payment_gate import (
    PaymentGate,
    PaymentTerms,
    SettlementResult,
    VerificationResult,
    get_payment_gate,
)

client = TestClient(app)

_PAY_TO = "0x178517854cA110D421140f5Ab4653F7F39339ACD"
_HEADERS = {
    "X-PAYMENT": base64.b64encode(
        json.dumps({"scheme": "exact", "network": "base", "payload": {}}).encode()
    ).decode()
}
_BODY = {"title": "Sunset Vibes", "style": "lo-fi"}


def _mock_gate() -> MagicMock:
    real = PaymentGate(PaymentTerms(pay_to=_PAY_TO, amount="200000", asset="0xUSDC"), "http://f")
    gate = MagicMock(spec=PaymentGate)
    gate.build_requirement.side_effect = real.build_requirement
    gate.verify = AsyncMock(return_value=VerificationResult(valid=True, payer="0xPayer"))
    gate.settle = AsyncMock(
        return_value=SettlementResult(success=True, tx_ref="0xtx", payer="0xPayer", network="base")
    )
    return gate


@pytest.fixture
def wired():
    """Memory store + mocked gate + silent notifier wired into the app."""
    store = MemoryJobStore()
    gate = _mock_gate()
    notifier = MagicMock(spec=TelegramNotifier)
    notifier.notify_new_order = AsyncMock(return_value=False)

    app.dependency_overrides[get_job_store] = lambda: store
    app.dependency_overrides[get_payment_gate] = lambda: gate
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield store, gate
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Payment required
# ---------------------------------------------------------------------------


class TestPaymentRequired:
    def test_no_header(self, wired):
        store, gate = wired
        resp = client.post("/api/generate", json=_BODY)

        assert resp.status_code == 402
        data = resp.json()
        assert data["x402Version"] == 1
        assert data["error"] == "X-PAYMENT header is required"
        accept = data["accepts"][0]
        assert accept["payTo"] == _PAY_TO
        assert accept["maxAmountRequired"] == "200000"
        assert accept["resource"].endswith("/api/generate")
        assert "bazaar" in accept["extensions"]
        assert store.queue_length() == 0
        gate.verify.assert_not_awaited()

    def test_garbage_header(self, wired):
        _, gate = wired
        resp = client.post("/api/generate", json=_BODY, headers={"X-PAYMENT": "%%%"})

        assert resp.status_code == 402
        assert resp.json()["error"] == "Invalid payment format"
        assert len(resp.json()["requestId"]) == 8
        gate.verify.assert_not_awaited()

    def test_request_id_matches_response_header(self, wired):
        resp = client.post("/api/generate", json=_BODY, headers={"X-PAYMENT": "%%%"})

        assert resp.json()["requestId"] == resp.headers["X-Request-ID"]

    def test_forwarded_request_id_echoed(self, wired):
        _, gate = wired
        gate.verify.return_value = VerificationResult(valid=False, reason="expired")

        resp = client.post(
            "/api/generate", json=_BODY, headers={**_HEADERS, "X-Request-ID": "edge-trace-91"}
        )

        assert resp.status_code == 402
        assert resp.json()["requestId"] == "edge-trace-91"
        assert resp.headers["X-Request-ID"] == "edge-trace-91"

    def test_unsafe_forwarded_request_id_replaced(self, wired):
        resp = client.post(
            "/api/generate", json=_BODY, headers={"X-PAYMENT": "%%%", "X-Request-ID": "a b\"c"}
        )

        request_id = resp.headers["X-Request-ID"]
        assert request_id != "a b\"c"
        assert len(request_id) == 8
        assert resp.json()["requestId"] == request_id

    def test_verification_rejected(self, wired):
        store, gate = wired
        gate.verify.return_value = VerificationResult(valid=False, reason="insufficient_funds")

        resp = client.post("/api/generate", json=_BODY, headers=_HEADERS)

        assert resp.status_code == 402
        assert resp.json()["error"] == "insufficient_funds"
        assert gate.settle.await_count == 0
        assert store.queue_length() == 0

    def test_settlement_rejected(self, wired):
        store, gate = wired
        gate.settle.return_value = SettlementResult(success=False, reason="nonce reused")

        resp = client.post("/api/generate", json=_BODY, headers=_HEADERS)

        assert resp.status_code == 402
        assert resp.json()["error"] == "nonce reused"
        assert store.queue_length() == 0

    def test_unexpected_error_answers_402(self, wired):
        _, gate = wired
        gate.verify.side_effect = RuntimeError("boom")

        resp = client.post("/api/generate", json=_BODY, headers=_HEADERS)

        assert resp.status_code == 402
        assert resp.json()["error"] == "Internal server error during payment processing"
        assert resp.json()["accepts"][0]["payTo"] == _PAY_TO


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize(
        "body",
        [{"title": "Sunset Vibes"}, {"style": "lo-fi"}, {"title": " ", "style": "lo-fi"}],
    )
    def test_missing_fields_400_without_settling(self, wired, body):
        store, gate = wired
        resp = client.post("/api/generate", json=body, headers=_HEADERS)

        assert resp.status_code == 400
        data = resp.json()
        assert data["success"] is False
        assert data["error"] == "Missing required fields"
        gate.verify.assert_awaited_once()
        assert gate.settle.await_count == 0
        assert store.queue_length() == 0

    def test_non_json_body_400(self, wired):
        _, gate = wired
        resp = client.post(
            "/api/generate",
            content=b"title=x",
            headers={**_HEADERS, "Content-Type": "text/plain"},
        )
        assert resp.status_code == 400
        assert gate.settle.await_count == 0


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


class TestAccepted:
    def test_job_queued(self, wired):
        store, gate = wired
        resp = client.post("/api/generate", json=_BODY, headers=_HEADERS)

        assert resp.status_code == 202
        data = resp.json()
        assert data["success"] is True
        assert data["status"] == "queued"
        assert data["position"] == 1
        assert data["estimatedWaitSeconds"] == 90
        assert data["statusUrl"] == f"/api/status/{data['jobId']}"
        assert data["payment"] == {"transaction": "0xtx", "amount": "$0.20 USDC", "payer": "0xPayer"}
        assert "Sunset Vibes" in data["message"]

        job = store.get(data["jobId"])
        assert job.payment_proof.tx_ref == "0xtx"

        settlement = json.loads(base64.b64decode(resp.headers["X-PAYMENT-RESPONSE"]))
        assert settlement == {
            "success": True,
            "transaction": "0xtx",
            "network": "base",
            "payer": "0xPayer",
        }

    def test_then_status_and_claim(self, wired):
        store, _ = wired
        job_id = client.post("/api/generate", json=_BODY, headers=_HEADERS).json()["jobId"]

        assert client.get(f"/api/status/{job_id}").json()["position"] == 1
        assert store.claim_next().id == job_id
        assert client.get(f"/api/status/{job_id}").json()["status"] == "processing"


# ---------------------------------------------------------------------------
# Metadata endpoints
# ---------------------------------------------------------------------------


class TestMetadata:
    def test_discovery(self):
        resp = client.get("/api/discovery")

        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "public, max-age=3600"
        data = resp.json()
        assert data["payment"]["protocol"] == "x402"
        assert any(r["url"] == "/api/generate" for r in data["resources"])

    def test_health_reports_queue(self, wired):
        store, _ = wired
        store.create("a", "A", "lo-fi")
        store.create("b", "B", "lo-fi")

        data = client.get("/api/health").json()

        assert data["status"] == "operational"
        assert data["queue"] == {"length": 2, "estimatedWaitSeconds": 180}
