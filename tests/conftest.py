# tests/conftest.py
"""
Shared fixtures: a temporary database, in-memory content store, a
published resource and a signing buyer account.
"""
import asyncio
import base64
import json
import time

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from fastapi.testclient import TestClient

from app.core.config import settings
from app.main import create_app
from app.services.content_store import InMemoryContentStore
from app.services.database import Database
from app.services.ledger import LicenseLedger
from app.x402.chain import build_transfer_authorization
from app.x402.facilitator import PaymentFacilitator, SettleResult, VerifyResult
from app.x402.gate import ResourceGate
from app.x402.publisher import ResourcePublisher
from app.x402.requirements import RequirementsBuilder
from app.x402.vault import KeyVault, generate_master_key

OWNER_ADDRESS = "0x209693Bc6afc0C5328bA36FaF03C514EF312287C"
BUYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
SETTLED_TX = "0x" + "ab" * 32
PLAIN_CONTENT = b"\xff\xd8\xff\xe0 full resolution image bytes"
PREVIEW_CONTENT = b"\xff\xd8\xff\xe0 watermarked preview"
RESOURCE_TITLE = "Sunset over Lisbon"
RESOURCE_PRICE = "7.50"
REQUIRED_AMOUNT = 7_500_000


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path, monkeypatch):
    """Keep audit events out of the working tree."""
    log_path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(log_path))
    return log_path


@pytest.fixture
def buyer():
    return Account.from_key(BUYER_KEY)


@pytest.fixture
def other_buyer():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def master_key():
    return generate_master_key()


@pytest.fixture
def database(tmp_path):
    return Database(str(tmp_path / "gateway.db"))


@pytest.fixture
def ledger(database):
    return LicenseLedger(database)


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def vault(master_key):
    return KeyVault(master_key)


@pytest.fixture
def builder():
    return RequirementsBuilder(network="base-sepolia")


@pytest.fixture
def publisher(database, store, vault):
    return ResourcePublisher(database, store, vault)


@pytest.fixture
def resource(publisher):
    return publisher.publish(
        plain_bytes=PLAIN_CONTENT,
        preview_bytes=PREVIEW_CONTENT,
        owner_address=OWNER_ADDRESS,
        price=RESOURCE_PRICE,
        title=RESOURCE_TITLE,
        description="Golden hour over the Tagus",
        width=4000,
        height=3000,
    )


class StubFacilitator(PaymentFacilitator):
    """Counts calls and returns canned results; settle can be slowed down."""

    mode = "stub"

    def __init__(self, verify_result=None, settle_result=None, settle_delay=0.0):
        self.verify_result = verify_result or VerifyResult.valid()
        self.settle_result = settle_result or SettleResult(
            success=True, transaction=SETTLED_TX, network="base-sepolia"
        )
        self.settle_delay = settle_delay
        self.verify_calls = 0
        self.settle_calls = 0

    async def verify(self, proof, requirements):
        self.verify_calls += 1
        return self.verify_result

    async def settle(self, proof, requirements):
        self.settle_calls += 1
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        return self.settle_result


@pytest.fixture
def stub_facilitator():
    return StubFacilitator()


@pytest.fixture
def gate(database, ledger, store, vault, builder, stub_facilitator):
    return ResourceGate(
        database=database,
        ledger=ledger,
        store=store,
        vault=vault,
        builder=builder,
        facilitator=stub_facilitator,
        base_uri="http://testserver",
    )


@pytest.fixture
def client(gate):
    return TestClient(create_app(gate=gate))


def make_proof_dict(
    account,
    resource_id=None,
    recipient=OWNER_ADDRESS,
    value=REQUIRED_AMOUNT,
    valid_after=None,
    valid_before=None,
    nonce="0x" + "01" * 32,
    asset=None,
    chain_id=84532,
    signed_value=None,
):
    """
    Build an ``exact`` payment payload signed by ``account``.

    ``signed_value`` signs a different value than the one sent, which
    produces a payload whose signature does not match.
    """
    now = int(time.time())
    valid_after = now - 60 if valid_after is None else valid_after
    valid_before = now + 300 if valid_before is None else valid_before
    asset = asset or RequirementsBuilder(network="base-sepolia").asset

    typed_data = build_transfer_authorization(
        signer=account.address,
        recipient=recipient,
        value=value if signed_value is None else signed_value,
        valid_after=valid_after,
        valid_before=valid_before,
        nonce=nonce,
        token_name="USDC",
        token_version="2",
        chain_id=chain_id,
        verifying_contract=asset,
    )
    signed = account.sign_message(encode_typed_data(full_message=typed_data))

    payload = {
        "signature": "0x" + bytes(signed.signature).hex(),
        "authorization": {
            "from": account.address,
            "to": recipient,
            "value": str(value),
            "validAfter": str(valid_after),
            "validBefore": str(valid_before),
            "nonce": nonce,
        },
    }
    if resource_id is not None:
        payload["resourceId"] = resource_id

    return {
        "x402Version": 1,
        "scheme": "exact",
        "network": "base-sepolia",
        "payload": payload,
    }


def encode_header(proof_dict) -> str:
    return base64.b64encode(json.dumps(proof_dict).encode("utf-8")).decode("ascii")


@pytest.fixture
def payment_header(buyer, resource):
    return encode_header(make_proof_dict(buyer, resource_id=resource.id))
