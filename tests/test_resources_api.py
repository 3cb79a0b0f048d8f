# tests/test_resources_api.py
"""
Integration tests for GET /resources/{id}: challenge, purchase, license
reuse and failure paths through the FastAPI app.
"""
import base64
import json
import uuid
from unittest.mock import MagicMock

import requests
from fastapi.testclient import TestClient

from app.main import create_app
from app.x402.audit import AuditEventType, read_audit_log
from app.x402.errors import InvalidReason
from app.x402.facilitator import LocalFacilitator, SettleResult, VerifyResult
from app.x402.gate import LICENSE_ID_HEADER, ResourceGate
from app.x402.vault import KeyVault, generate_master_key

from conftest import (
    OWNER_ADDRESS,
    PLAIN_CONTENT,
    PREVIEW_CONTENT,
    REQUIRED_AMOUNT,
    SETTLED_TX,
    encode_header,
    make_proof_dict,
)


class TestHealth:
    """Test the health check."""

    def test_root(self, client):
        """Root returns status ok."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "version" in response.json()


class TestPaymentChallenge:
    """Test requests without X-PAYMENT."""

    def test_returns_402(self, client, resource):
        """No payment header yields a 402 challenge."""
        response = client.get(f"/resources/{resource.id}")

        assert response.status_code == 402
        body = response.json()
        assert body["x402Version"] == 1
        assert body["error"] == "X-PAYMENT header is required"
        accepts = body["accepts"][0]
        assert accepts["scheme"] == "exact"
        assert accepts["maxAmountRequired"] == "7500000"
        assert accepts["payTo"] == OWNER_ADDRESS
        assert accepts["resource"] == f"http://testserver/resources/{resource.id}"
        assert accepts["description"] == "License for: Sunset over Lisbon"
        assert accepts["extra"]["resourceId"] == resource.id
        assert body["resource"]["id"] == resource.id
        assert body["resource"]["title"] == "Sunset over Lisbon"
        assert body["resource"]["price"] == "7.50"
        assert body["resource"]["width"] == 4000

    def test_challenge_is_stable(self, client, resource):
        """Two challenges for the same resource are identical."""
        first = client.get(f"/resources/{resource.id}").json()
        second = client.get(f"/resources/{resource.id}").json()
        assert first == second

    def test_challenge_audited(self, client, resource):
        """A payment_required_sent event is written."""
        client.get(f"/resources/{resource.id}")
        events = read_audit_log(event_type=AuditEventType.PAYMENT_REQUIRED_SENT)
        assert len(events) == 1
        assert events[0]["data"]["amount"] == "7500000"


class TestResourceErrors:
    """Test 400 and 404 outcomes."""

    def test_unknown_resource(self, client):
        """Unknown ids are 404 without a header."""
        response = client.get(f"/resources/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json() == {"error": "Resource not found"}

    def test_unknown_resource_with_payment(self, client, payment_header, stub_facilitator):
        """Unknown ids are 404 even with a payment header, and nothing is verified."""
        response = client.get(f"/resources/{uuid.uuid4()}", headers={"X-PAYMENT": payment_header})
        assert response.status_code == 404
        assert stub_facilitator.verify_calls == 0

    def test_invalid_resource_id(self, client):
        """Non-UUID ids are rejected."""
        response = client.get("/resources/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid resource ID format"

    def test_malformed_header(self, client, resource, stub_facilitator):
        """Non-base64 X-PAYMENT is a 400 mentioning the payment proof."""
        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": "not-valid-base64!!!"})

        assert response.status_code == 400
        assert "payment proof" in response.json()["error"].lower()
        assert stub_facilitator.verify_calls == 0

    def test_bad_proof_shape(self, client, resource, buyer):
        """A decodable proof with bad fields is a 400."""
        data = make_proof_dict(buyer, resource_id=resource.id)
        data["payload"]["authorization"]["nonce"] = "0x12"

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": encode_header(data)})
        assert response.status_code == 400
        assert "Invalid payment proof format" in response.json()["error"]


class TestPurchase:
    """Test a successful first purchase."""

    def test_delivers_content(self, client, resource, payment_header, ledger, buyer):
        """Valid payment returns decrypted bytes and issues a license."""
        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})

        assert response.status_code == 200
        assert response.content == PLAIN_CONTENT
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["content-disposition"] == 'attachment; filename="Sunset_over_Lisbon.jpg"'

        license = ledger.find_license(resource.id, buyer.address)
        assert license is not None
        assert response.headers[LICENSE_ID_HEADER] == license.id
        assert license.transaction_ref == SETTLED_TX
        assert license.buyer_address == buyer.address.lower()
        assert license.payee_address == OWNER_ADDRESS
        assert license.price == "7.50"

    def test_payment_response_header(self, client, resource, payment_header):
        """First purchase carries X-PAYMENT-RESPONSE."""
        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        decoded = json.loads(base64.b64decode(response.headers["X-PAYMENT-RESPONSE"]))

        assert decoded["transactionRef"] == SETTLED_TX
        assert decoded["licenseId"] == response.headers[LICENSE_ID_HEADER]
        assert decoded["network"] == "base-sepolia"

    def test_purchase_audit_trail(self, client, resource, payment_header):
        """Each stage of the purchase is audited under one request id."""
        client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})

        events = list(reversed(read_audit_log()))
        types = [e["event_type"] for e in events]
        assert types == [
            "payment_received",
            "payment_verified",
            "payment_settled",
            "license_issued",
            "content_delivered",
        ]
        assert len({e["request_id"] for e in events}) == 1
        assert "signature" not in json.dumps(events)


class TestLicenseReuse:
    """Test re-access by a buyer who already holds a license."""

    def test_second_access_reuses_license(self, client, resource, payment_header, stub_facilitator):
        """Same proof twice: same license, no second verify or settle."""
        first = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        second = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.content == PLAIN_CONTENT
        assert second.headers[LICENSE_ID_HEADER] == first.headers[LICENSE_ID_HEADER]
        assert "X-PAYMENT-RESPONSE" not in second.headers
        assert stub_facilitator.verify_calls == 1
        assert stub_facilitator.settle_calls == 1

    def test_reuse_with_fresh_proof(self, client, resource, buyer, stub_facilitator):
        """A new proof from a licensed buyer is not charged again."""
        first = client.get(
            f"/resources/{resource.id}",
            headers={"X-PAYMENT": encode_header(make_proof_dict(buyer, resource_id=resource.id))},
        )
        second = client.get(
            f"/resources/{resource.id}",
            headers={"X-PAYMENT": encode_header(
                make_proof_dict(buyer, resource_id=resource.id, nonce="0x" + "02" * 32)
            )},
        )
        assert second.headers[LICENSE_ID_HEADER] == first.headers[LICENSE_ID_HEADER]
        assert stub_facilitator.settle_calls == 1

    def test_reuse_audited(self, client, resource, payment_header):
        """Re-access writes a license_reused event."""
        client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        assert len(read_audit_log(event_type=AuditEventType.LICENSE_REUSED)) == 1

    def test_other_buyer_pays_separately(self, client, resource, payment_header, other_buyer, stub_facilitator):
        """Licenses are per buyer."""
        first = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        other = client.get(
            f"/resources/{resource.id}",
            headers={"X-PAYMENT": encode_header(make_proof_dict(other_buyer, resource_id=resource.id))},
        )

        assert other.status_code == 200
        assert other.headers[LICENSE_ID_HEADER] != first.headers[LICENSE_ID_HEADER]
        assert "X-PAYMENT-RESPONSE" in other.headers
        assert stub_facilitator.settle_calls == 2

    def test_no_header_still_challenges(self, client, resource, payment_header):
        """Without a header there is no buyer identity, so a licensed buyer gets 402."""
        client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        assert client.get(f"/resources/{resource.id}").status_code == 402


class TestPaymentRejected:
    """Test verification and settlement failures."""

    def test_invalid_payment(self, client, resource, payment_header, stub_facilitator, ledger, buyer):
        """Verifier rejection is a 402 with the reason and no settlement."""
        stub_facilitator.verify_result = VerifyResult.invalid(InvalidReason.AMOUNT_MISMATCH, buyer.address)

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})

        assert response.status_code == 402
        body = response.json()
        assert body["reason"] == "AmountMismatch"
        assert body["error"] == "Payment verification failed: AmountMismatch"
        assert body["accepts"][0]["maxAmountRequired"] == "7500000"
        assert stub_facilitator.settle_calls == 0
        assert ledger.find_license(resource.id, buyer.address) is None

    def test_settlement_failure(self, client, resource, payment_header, stub_facilitator, ledger, buyer):
        """Failed settlement is a 500 and no license is written."""
        stub_facilitator.settle_result = SettleResult(
            success=False, network="base-sepolia", error_reason="TransactionReverted"
        )

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})

        assert response.status_code == 500
        assert response.json() == {
            "error": "Payment settlement failed",
            "reason": "TransactionReverted",
        }
        assert ledger.find_license(resource.id, buyer.address) is None
        failures = read_audit_log(event_type=AuditEventType.PAYMENT_FAILED)
        assert failures[0]["data"]["stage"] == "settle"

    def test_settlement_error_hides_details(self, database, ledger, store, vault, builder, resource, payment_header):
        """Executor exception text never reaches the response body."""
        chain = MagicMock()
        chain.read_balance.return_value = 10 * REQUIRED_AMOUNT
        executor = MagicMock()
        executor.transfer_with_authorization.side_effect = requests.HTTPError(
            "401 Client Error: Unauthorized for url: https://base-sepolia.rpc.example/v2/SECRET_API_KEY"
        )
        gate = ResourceGate(
            database, ledger, store, vault, builder,
            LocalFacilitator(chain_client=chain, chain_id=84532, executor=executor),
            base_uri="http://testserver",
        )
        client = TestClient(create_app(gate=gate))

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})

        assert response.status_code == 500
        assert response.json() == {"error": "Payment settlement failed", "reason": "SettlementFailed"}
        assert "SECRET_API_KEY" not in response.text

    def test_settlement_failure_can_be_retried(self, client, resource, payment_header, stub_facilitator):
        """After a failed settlement the buyer can pay again."""
        stub_facilitator.settle_result = SettleResult(success=False, error_reason="timeout")
        assert client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header}).status_code == 500

        stub_facilitator.settle_result = SettleResult(success=True, transaction=SETTLED_TX, network="base-sepolia")
        assert client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header}).status_code == 200

    def test_unsupported_scheme(self, database, ledger, store, vault, builder, resource):
        """A proof for another scheme is a 402 UnsupportedScheme."""
        gate = ResourceGate(
            database, ledger, store, vault, builder,
            LocalFacilitator(chain_client=None, chain_id=84532),
            base_uri="http://testserver",
        )
        client = TestClient(create_app(gate=gate))
        header = encode_header({"x402Version": 1, "scheme": "upto", "network": "base-sepolia", "payload": {}})

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": header})

        assert response.status_code == 402
        assert response.json()["reason"] == "UnsupportedScheme"

    def test_decryption_failure(self, database, ledger, store, builder, stub_facilitator, resource, payment_header):
        """A vault with the wrong master key yields a 500."""
        gate = ResourceGate(
            database, ledger, store, KeyVault(generate_master_key()), builder, stub_facilitator,
            base_uri="http://testserver",
        )
        client = TestClient(create_app(gate=gate))

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        assert response.status_code == 500
        assert "error" in response.json()

    def test_missing_content_blob(self, client, resource, payment_header, store):
        """A content store miss is a 500."""
        store._blobs.pop(resource.content_locator)

        response = client.get(f"/resources/{resource.id}", headers={"X-PAYMENT": payment_header})
        assert response.status_code == 500
        assert response.json() == {"error": "Content unavailable"}


class TestPreview:
    """Test GET /resources/{id}/preview."""

    def test_preview_bytes(self, client, resource, stub_facilitator):
        """Preview is free and returns the stored preview."""
        response = client.get(f"/resources/{resource.id}/preview")

        assert response.status_code == 200
        assert response.content == PREVIEW_CONTENT
        assert stub_facilitator.verify_calls == 0

    def test_preview_unknown(self, client):
        """Unknown resources have no preview."""
        assert client.get(f"/resources/{uuid.uuid4()}/preview").status_code == 404
