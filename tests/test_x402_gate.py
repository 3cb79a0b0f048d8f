# tests/test_x402_gate.py
"""
Unit tests for the resource gate: helpers, per-buyer serialization and
the duplicate-license fallback.
"""
import asyncio

import pytest

from app.x402.codec import decode_payment_header
from app.x402.errors import InvalidResourceId, NotFoundError
from app.x402.gate import KeyedLocks, sanitize_filename, validate_resource_id

from conftest import SETTLED_TX, encode_header, make_proof_dict


class TestSanitizeFilename:
    """Test download filename generation."""

    def test_replaces_non_alphanumerics(self):
        """Spaces and punctuation become underscores."""
        assert sanitize_filename("Sunset over Lisbon!") == "Sunset_over_Lisbon_.jpg"

    def test_unicode_replaced(self):
        """Non-ASCII letters are replaced too."""
        assert sanitize_filename("Café") == "Caf_.jpg"

    def test_extension_follows_mime(self):
        """PNG resources get a .png extension."""
        assert sanitize_filename("chart", "image/png") == "chart.png"

    def test_empty_title(self):
        """An empty title still yields a filename."""
        assert sanitize_filename("") == "download.jpg"


class TestValidateResourceId:
    """Test resource id validation."""

    def test_uuid_normalized(self):
        """Upper-case UUIDs are normalized."""
        assert validate_resource_id("8F14E45F-CEEA-467A-9575-6A1B2F0C9D3E") == "8f14e45f-ceea-467a-9575-6a1b2f0c9d3e"

    @pytest.mark.parametrize("value", ["", "abc", "1234", "../etc/passwd"])
    def test_rejects_non_uuid(self, value):
        """Anything that is not a UUID is rejected."""
        with pytest.raises(InvalidResourceId):
            validate_resource_id(value)


class TestKeyedLocks:
    """Test per-key lock leasing."""

    def test_serializes_same_key(self):
        """Holders of the same key never overlap."""
        locks = KeyedLocks()
        active = []
        overlaps = []

        async def worker():
            async with locks.hold(("r", "b")):
                if active:
                    overlaps.append(True)
                active.append(1)
                await asyncio.sleep(0.01)
                active.pop()

        async def main():
            await asyncio.gather(*(worker() for _ in range(5)))

        asyncio.run(main())
        assert overlaps == []

    def test_released_locks_dropped(self):
        """No lock is retained once every holder is done."""
        locks = KeyedLocks()

        async def main():
            async with locks.hold("a"):
                assert len(locks) == 1
            assert len(locks) == 0

        asyncio.run(main())


class TestGateConcurrency:
    """Test concurrent purchases by the same buyer."""

    def test_concurrent_duplicates_settle_once(self, gate, resource, payment_header, stub_facilitator):
        """Two simultaneous requests: one settlement, one license, both served."""
        stub_facilitator.settle_delay = 0.05

        async def main():
            return await asyncio.gather(
                gate.handle(resource.id, payment_header, client_ip="10.0.0.1"),
                gate.handle(resource.id, payment_header, client_ip="10.0.0.2"),
            )

        first, second = asyncio.run(main())

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.license_id == second.license_id
        assert stub_facilitator.settle_calls == 1
        assert stub_facilitator.verify_calls == 1
        with_receipt = [r for r in (first, second) if "X-PAYMENT-RESPONSE" in r.headers]
        assert len(with_receipt) == 1

    def test_different_buyers_not_serialized(self, gate, resource, buyer, other_buyer, stub_facilitator):
        """Different buyers each settle."""
        headers = [
            encode_header(make_proof_dict(account, resource_id=resource.id))
            for account in (buyer, other_buyer)
        ]

        async def main():
            return await asyncio.gather(*(gate.handle(resource.id, h) for h in headers))

        results = asyncio.run(main())
        assert {r.status_code for r in results} == {200}
        assert results[0].license_id != results[1].license_id
        assert stub_facilitator.settle_calls == 2

    def test_duplicate_insert_serves_existing(self, gate, resource, ledger, buyer, builder, payment_header):
        """If another process licensed the buyer first, its license is served."""
        existing = ledger.create_license(resource.id, buyer.address, resource.owner_address, "7.50", "0x01")
        requirements = builder.build(resource, "http://testserver")
        proof = decode_payment_header(payment_header)

        result = asyncio.run(gate._verify_and_purchase(resource, requirements, proof, None, "req00001"))

        assert result.status_code == 200
        assert result.license_id == existing.id
        assert result.transaction_ref == "0x01"
        assert "X-PAYMENT-RESPONSE" not in result.headers

    def test_unknown_resource(self, gate):
        """get_resource raises NotFoundError for unknown ids."""
        with pytest.raises(NotFoundError):
            asyncio.run(gate.get_resource("00000000-0000-4000-8000-000000000000"))

    def test_license_reuse_result(self, gate, resource, payment_header):
        """A second handle call returns the first license without a receipt."""
        first = asyncio.run(gate.handle(resource.id, payment_header))
        second = asyncio.run(gate.handle(resource.id, payment_header))

        assert first.transaction_ref == SETTLED_TX
        assert second.license_id == first.license_id
        assert "X-PAYMENT-RESPONSE" in first.headers
        assert "X-PAYMENT-RESPONSE" not in second.headers
