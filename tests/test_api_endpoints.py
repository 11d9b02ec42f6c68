# tests/test_api_endpoints.py
"""
HTTP-level tests for the gateway routes.

Dependencies are overridden so no request leaves the process: storage is
in-memory, the ledger is a mock and the metadata loader returns a fixture.
"""
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.api.deps import (
    gateway_dependency,
    ledger_dependency,
    payout_dependency,
    storage_dependency,
)
from app.core.errors import LedgerError
from app.main import app
from app.x402.audit import AuditEventType, log_audit_event
from app.services.solana_ledger import AccountNotFound
from app.services.upstream import UpstreamResult
from app.x402.gateway import ProxyGateway
from app.x402.payout import PayoutExecutor
from app.x402.verifier import VerificationFailure, VerificationResult

from tests.conftest import OPERATOR_WALLET, PROVIDER_WALLET

CID = "QmRunnerMetadata"
SIGNATURE = "5" * 88


@pytest.fixture
def verifier():
    verifier = MagicMock()
    verifier.verify.return_value = VerificationResult(
        valid=True, signature=SIGNATURE, amount=Decimal("0.5"), timestamp=1_700_000_000
    )
    return verifier


@pytest.fixture
def client(storage, verifier, metadata, mock_ledger):
    app.dependency_overrides[storage_dependency] = lambda: storage
    app.dependency_overrides[ledger_dependency] = lambda: mock_ledger
    app.dependency_overrides[gateway_dependency] = lambda: ProxyGateway(
        storage=storage, verifier=verifier, metadata_loader=lambda cid: metadata
    )
    app.dependency_overrides[payout_dependency] = lambda: PayoutExecutor(storage=storage, ledger=mock_ledger)
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestRootAndHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_health(self, client, mock_ledger):
        mock_ledger.get_network_slot.return_value = 123456

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["blockchain"] == "solana"
        assert body["cluster"] == "devnet"
        assert body["currentSlot"] == 123456
        assert "timestamp" in body

    def test_health_rpc_down(self, client, mock_ledger):
        mock_ledger.get_network_slot.side_effect = LedgerError("RPC get_slot failed")

        response = client.get("/health")

        assert response.status_code == 500
        assert response.json() == {"status": "unhealthy", "error": "RPC get_slot failed"}


class TestPaymentInfoEndpoint:
    def test_payment_info(self, client):
        response = client.get("/fluxapi/payment-info", params={"id": CID})

        assert response.status_code == 200
        body = response.json()
        assert body["recipient"] == OPERATOR_WALLET
        assert body["amount"] == 0.5
        assert body["token"] == "USDC"
        assert body["apiCid"] == CID

    def test_missing_id(self, client):
        response = client.get("/fluxapi/payment-info")

        assert response.status_code == 400
        assert response.json()["code"] == "MissingCid"


class TestCallEndpoint:
    def test_no_signature_is_402(self, client):
        response = client.post("/fluxapi/", json={"cid": CID})

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Payment required"
        assert body["paymentInfo"]["recipient"] == OPERATOR_WALLET
        assert body["paymentInfo"]["amount"] == 0.5
        assert body["paymentInfo"]["token"] == "USDC"

    @patch("app.x402.gateway.forward_call")
    def test_paid_call(self, mock_forward, client, storage):
        listing = storage.create_listing(CID, PROVIDER_WALLET)
        mock_forward.return_value = UpstreamResult(status=200, latency_ms=12, body={"result": 7})

        response = client.post("/fluxapi/", json={"cid": CID, "signature": SIGNATURE, "data": {"x": 1}})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "data": {"result": 7},
            "upstreamStatus": 200,
            "payment": {"signature": SIGNATURE, "amount": 0.5, "verified": True},
        }
        assert len(storage.query_usage(listing.id)) == 1

    @patch("app.x402.gateway.forward_call")
    def test_signature_from_header(self, mock_forward, client, verifier):
        mock_forward.return_value = UpstreamResult(status=200, latency_ms=1, body={})

        response = client.post("/fluxapi/", json={"cid": CID}, headers={"X-PAYMENT-SIGNATURE": SIGNATURE})

        assert response.status_code == 200
        assert verifier.verify.call_args[0][0] == SIGNATURE

    def test_rejected_payment(self, client, verifier):
        verifier.verify.return_value = VerificationResult.failure(
            SIGNATURE, VerificationFailure.AMOUNT_MISMATCH, "Amount mismatch: expected 0.5, got 0.1"
        )

        response = client.post("/fluxapi/", json={"cid": CID, "signature": SIGNATURE})

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Payment verification failed"
        assert body["reason"] == "AmountMismatch"

    @patch("app.x402.gateway.forward_call")
    def test_replayed_signature(self, mock_forward, client):
        mock_forward.return_value = UpstreamResult(status=200, latency_ms=1, body={})
        client.post("/fluxapi/", json={"cid": CID, "signature": SIGNATURE})

        response = client.post("/fluxapi/", json={"cid": CID, "signature": SIGNATURE})

        assert response.status_code == 402
        assert response.json()["reason"] == "AlreadyConsumed"

    @patch("app.x402.gateway.forward_call")
    def test_upstream_unreachable(self, mock_forward, client):
        mock_forward.return_value = UpstreamResult(status=500, latency_ms=30000, error="Read timed out")

        response = client.post("/fluxapi/", json={"cid": CID, "signature": SIGNATURE})

        assert response.status_code == 500
        assert response.json()["error"] == "API call failed"
        assert response.json()["details"] == "Read timed out"

    def test_missing_cid(self, client):
        response = client.post("/fluxapi/", json={"signature": SIGNATURE})

        assert response.status_code == 400


class TestApiHealthEndpoint:
    @patch("app.x402.gateway.check_upstream_health")
    def test_report(self, mock_health, client):
        mock_health.return_value = "offline"

        response = client.get(f"/api/health/{CID}")

        assert response.status_code == 200
        assert response.json() == {"report": {"status": "offline"}}


class TestListingEndpoints:
    def test_store_and_list(self, client):
        response = client.post("/store-listing", json={"cid": CID, "ownerId": PROVIDER_WALLET})

        assert response.status_code == 200
        assert response.json()["success"] is True
        listing_id = response.json()["id"]

        listings = client.get("/listings").json()["listings"]
        assert len(listings) == 1
        assert listings[0]["id"] == listing_id
        assert listings[0]["earning"] == 0.0

    def test_store_duplicate_cid_is_conflict(self, client, storage):
        storage.create_listing(CID, PROVIDER_WALLET, Decimal("5"))

        response = client.post("/store-listing", json={"cid": CID, "ownerId": OPERATOR_WALLET, "earning": 0})

        assert response.status_code == 409
        assert response.json()["code"] == "ListingExists"
        kept = storage.get_listing_by_cid(CID)
        assert kept.ownerId == PROVIDER_WALLET
        assert kept.earning == Decimal("5")

    def test_store_requires_cid(self, client):
        response = client.post("/store-listing", json={"ownerId": PROVIDER_WALLET})

        assert response.status_code == 422

    def test_earnings_for_owner(self, client, storage):
        storage.create_listing(CID, PROVIDER_WALLET, Decimal("1.25"))
        storage.create_listing("QmOther", OPERATOR_WALLET)

        response = client.post("/earnings", json={"address": PROVIDER_WALLET})

        assert response.status_code == 200
        api_ids = response.json()["apiIds"]
        assert [a["cid"] for a in api_ids] == [CID]
        assert api_ids[0]["earning"] == 1.25

    def test_earnings_invalid_address(self, client):
        response = client.post("/earnings", json={"address": "not-a-wallet"})

        assert response.status_code == 400
        assert response.json()["code"] == "InvalidAddress"

    @patch("app.x402.gateway.forward_call")
    def test_usage(self, mock_forward, client, storage):
        listing = storage.create_listing(CID, PROVIDER_WALLET)
        mock_forward.return_value = UpstreamResult(status=201, latency_ms=33, body={})
        client.post("/fluxapi/", json={"cid": CID, "signature": SIGNATURE})

        response = client.get(f"/usage/{listing.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["apiId"] == listing.id
        assert body["usageCount"] == 1
        assert body["usage"][0]["responseStatus"] == 201
        assert body["usage"][0]["responseTimeMs"] == 33

    def test_usage_empty(self, client):
        response = client.get("/usage/unknown")

        assert response.json() == {"apiId": "unknown", "usage": [], "usageCount": 0}


class TestPayoutEndpoints:
    def test_claim(self, client, storage):
        storage.create_listing(CID, PROVIDER_WALLET, Decimal("2"))

        response = client.post("/claim", json={"apiId": CID})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["amount"] == 2.0
        assert body["to"] == PROVIDER_WALLET
        assert body["explorer"].endswith("?cluster=devnet")
        assert "warning" not in body

    def test_claim_missing_api_id(self, client):
        response = client.post("/claim", json={})

        assert response.status_code == 400

    def test_claim_unknown(self, client):
        response = client.post("/claim", json={"apiId": "QmUnknown"})

        assert response.status_code == 404
        assert response.json()["code"] == "ApiNotFound"

    def test_claim_nothing(self, client, storage):
        storage.create_listing(CID, PROVIDER_WALLET)

        response = client.post("/claim", json={"apiId": CID})

        assert response.status_code == 400
        assert response.json()["code"] == "NothingToClaim"

    def test_claim_in_progress(self, client, storage):
        storage.create_listing(CID, PROVIDER_WALLET, Decimal("2"))
        storage.acquire_claim(CID)

        response = client.post("/claim", json={"apiId": CID})

        assert response.status_code == 409

    def test_balance(self, client, mock_ledger):
        mock_ledger.get_account_balance.return_value = Decimal("12.5")

        response = client.get(f"/balance/{PROVIDER_WALLET}")

        assert response.status_code == 200
        assert response.json() == {"address": PROVIDER_WALLET, "balance": 12.5, "token": "USDC"}

    def test_balance_without_token_account(self, client, mock_ledger):
        mock_ledger.get_account_balance.side_effect = AccountNotFound("Token account not found")

        response = client.get(f"/balance/{PROVIDER_WALLET}")

        assert response.json()["balance"] == 0.0

    def test_balance_invalid_address(self, client):
        response = client.get("/balance/not-a-wallet")

        assert response.status_code == 400

    def test_balance_rpc_down(self, client, mock_ledger):
        mock_ledger.get_account_balance.side_effect = LedgerError("RPC failed")

        response = client.get(f"/balance/{PROVIDER_WALLET}")

        assert response.status_code == 500


class TestAuditEndpoints:
    """Operator access to the audit trail for reconciliation."""

    @pytest.fixture
    def audit_key(self, isolated_settings):
        isolated_settings.AUDIT_API_KEY = "operator-key"
        return {"X-API-Key": "operator-key"}

    def test_disabled_without_key(self, client):
        response = client.get("/audit")

        assert response.status_code == 503

    def test_wrong_key(self, client, audit_key):
        response = client.get("/audit", headers={"X-API-Key": "guess"})

        assert response.status_code == 401

    def test_list_events(self, client, audit_key):
        log_audit_event(AuditEventType.PAYOUT_UNCONFIRMED, {"signature": "5xSubmitted"}, api_id=CID)
        log_audit_event(AuditEventType.PAYMENT_VERIFIED, {}, api_id="QmOther")

        response = client.get("/audit", params={"event_type": "payout_unconfirmed"}, headers=audit_key)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["events"][0]["api_id"] == CID
        assert body["events"][0]["data"]["signature"] == "5xSubmitted"

    def test_filter_by_api(self, client, audit_key):
        log_audit_event(AuditEventType.PAYMENT_VERIFIED, {}, api_id=CID)
        log_audit_event(AuditEventType.PAYMENT_VERIFIED, {}, api_id="QmOther")

        response = client.get("/audit", params={"api_id": CID}, headers=audit_key)

        assert [e["api_id"] for e in response.json()["events"]] == [CID]

    def test_unknown_event_type(self, client, audit_key):
        response = client.get("/audit", params={"event_type": "nonsense"}, headers=audit_key)

        assert response.status_code == 400
        assert response.json()["code"] == "InvalidEventType"

    def test_stats(self, client, audit_key):
        log_audit_event(AuditEventType.PAYOUT_SENT, {}, api_id=CID)

        response = client.get("/audit/stats", headers=audit_key)

        assert response.status_code == 200
        assert response.json()["total_events"] == 1
        assert response.json()["events_by_type"] == {"payout_sent": 1}
