# app/x402/gate.py
"""
Resource gate: the per-request x402 state machine.

    resource missing                         -> 404
    no X-PAYMENT header                      -> 402 challenge
    proof present, license exists            -> 200 content (no verify, no settle)
    proof present, no license, invalid       -> 402 with reason
    proof present, no license, settle fails  -> 500, no license written
    proof present, no license, settled       -> license issued, 200 content
                                                + X-PAYMENT-RESPONSE

Verify -> settle -> issue license runs under a per-(resource, buyer) lock,
and the ledger's unique constraint backs it up across processes.
"""
import asyncio
import logging
import re
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Hashable, Optional

from starlette.concurrency import run_in_threadpool
from x402.types import PaymentRequirements

from app.services.content_store import ContentStore
from app.services.database import Database, License, Resource
from app.services.ledger import LicenseLedger, normalize_address
from app.x402 import audit
from app.x402.codec import (
    X_PAYMENT_RESPONSE_HEADER,
    AuthorizationProof,
    decode_payment_header,
    describe_proof,
    encode_payment_response,
)
from app.x402.errors import (
    GatewayError,
    InvalidResourceId,
    LicenseAlreadyExists,
    NotFoundError,
    PaymentInvalid,
    SettlementFailure,
    SettlementReason,
)
from app.x402.facilitator import PaymentFacilitator
from app.x402.requirements import RequirementsBuilder, create_challenge_body
from app.x402.vault import KeyVault

logger = logging.getLogger(__name__)

LICENSE_ID_HEADER = "X-License-Id"

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


def sanitize_filename(title: str, mime_type: str = "image/jpeg") -> str:
    """Replace everything outside [A-Za-z0-9] with '_' and add an extension."""
    stem = re.sub(r"[^a-zA-Z0-9]", "_", title) or "download"
    return f"{stem}.{MIME_EXTENSIONS.get(mime_type, 'jpg')}"


def validate_resource_id(resource_id: str) -> str:
    try:
        return str(uuid.UUID(resource_id))
    except (ValueError, AttributeError, TypeError) as e:
        raise InvalidResourceId() from e


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class GateResult:
    status_code: int
    body: Optional[Dict[str, Any]] = None
    content: Optional[bytes] = None
    media_type: str = "application/json"
    headers: Dict[str, str] = field(default_factory=dict)
    license_id: Optional[str] = None
    transaction_ref: Optional[str] = None


class ResourceGate:

    def __init__(
        self,
        database: Database,
        ledger: LicenseLedger,
        store: ContentStore,
        vault: KeyVault,
        builder: RequirementsBuilder,
        facilitator: PaymentFacilitator,
        base_uri: str,
        locks: Optional[KeyedLocks] = None,
    ):
        self.database = database
        self.ledger = ledger
        self.store = store
        self.vault = vault
        self.builder = builder
        self.facilitator = facilitator
        self.base_uri = base_uri
        self.locks = locks or KeyedLocks()

    async def get_resource(self, resource_id: str) -> Resource:
        resource_id = validate_resource_id(resource_id)
        resource = await run_in_threadpool(self.database.get_resource, resource_id)
        if resource is None:
            raise NotFoundError("Resource not found")
        return resource

    async def handle(
        self,
        resource_id: str,
        payment_header: Optional[str],
        client_ip: Optional[str] = None,
    ) -> GateResult:
        """
        Run one request through the gate.

        Raises:
            GatewayError: For 400/404/500 outcomes; 402 and 200 are returned
        """
        request_id = audit.generate_request_id()
        resource = await self.get_resource(resource_id)
        requirements = self.builder.build(resource, self.base_uri)

        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header for {resource.id}, returning 402")
            audit.log_payment_required_sent(
                client_ip=client_ip,
                resource_id=resource.id,
                amount=requirements.max_amount_required,
                network=requirements.network,
                pay_to=requirements.pay_to,
                request_id=request_id,
            )
            return GateResult(
                status_code=402,
                body=create_challenge_body(requirements, resource),
            )

        proof = decode_payment_header(payment_header)
        buyer = proof.signer
        audit.log_payment_received(
            client_ip=client_ip,
            payer=buyer,
            resource_id=resource.id,
            proof=describe_proof(proof),
            request_id=request_id,
        )

        if buyer is None:
            # No buyer identity, so nothing to look up; the verifier rejects it
            return await self._verify_and_purchase(resource, requirements, proof, client_ip, request_id)

        existing = await run_in_threadpool(self.ledger.find_license, resource.id, buyer)
        if existing is not None:
            return await self._deliver_existing(resource, existing, client_ip, request_id)

        async with self.locks.hold((resource.id, normalize_address(buyer))):
            # A concurrent request may have finished the purchase while we waited
            existing = await run_in_threadpool(self.ledger.find_license, resource.id, buyer)
            if existing is not None:
                return await self._deliver_existing(resource, existing, client_ip, request_id)
            return await self._verify_and_purchase(resource, requirements, proof, client_ip, request_id)

    async def _verify_and_purchase(
        self,
        resource: Resource,
        requirements: PaymentRequirements,
        proof: AuthorizationProof,
        client_ip: Optional[str],
        request_id: str,
    ) -> GateResult:
        buyer = proof.signer

        verification = await self.facilitator.verify(proof, requirements)
        audit.log_payment_verified(
            client_ip=client_ip,
            payer=buyer,
            is_valid=verification.is_valid,
            invalid_reason=verification.invalid_reason,
            mode=self.facilitator.mode,
            request_id=request_id,
        )
        if not verification.is_valid:
            reason = verification.invalid_reason or "Unknown"
            logger.warning(f"x402: Payment verification failed for {resource.id}: {reason}")
            rejection = PaymentInvalid(f"Payment verification failed: {reason}", reason=reason)
            return GateResult(
                status_code=rejection.status_code,
                body=create_challenge_body(
                    requirements,
                    resource,
                    error_message=rejection.message,
                    reason=rejection.reason,
                ),
            )

        settlement = await self.facilitator.settle(proof, requirements)
        audit.log_payment_settled(
            client_ip=client_ip,
            payer=buyer,
            transaction_ref=settlement.transaction,
            network=settlement.network or requirements.network,
            success=settlement.success,
            error_reason=settlement.error_reason,
            request_id=request_id,
        )
        if not settlement.success or not settlement.transaction:
            reason = settlement.error_reason or SettlementReason.SETTLEMENT_FAILED.value
            logger.error(f"x402: Settlement failed for {resource.id}: {reason}")
            audit.log_payment_failed(
                client_ip=client_ip,
                reason=reason,
                stage="settle",
                wallet_address=buyer,
                request_id=request_id,
            )
            raise SettlementFailure(reason=reason)

        try:
            license = await run_in_threadpool(
                self.ledger.create_license,
                resource.id,
                buyer,
                resource.owner_address,
                resource.price,
                settlement.transaction,
            )
        except LicenseAlreadyExists:
            existing = await run_in_threadpool(self.ledger.find_license, resource.id, buyer)
            if existing is None:
                raise GatewayError("License could not be recorded")
            logger.warning(
                f"x402: Duplicate purchase of {resource.id} by {buyer}; "
                f"discarding license for tx {settlement.transaction}"
            )
            return await self._deliver_existing(resource, existing, client_ip, request_id)

        audit.log_license_issued(
            client_ip=client_ip,
            license_id=license.id,
            resource_id=resource.id,
            buyer=license.buyer_address,
            transaction_ref=license.transaction_ref,
            request_id=request_id,
        )
        network = settlement.network or requirements.network
        return await self._deliver(
            resource,
            license,
            client_ip,
            request_id,
            extra_headers={
                X_PAYMENT_RESPONSE_HEADER: encode_payment_response(
                    license.transaction_ref, license.id, network
                ),
            },
        )

    async def _deliver_existing(
        self,
        resource: Resource,
        license: License,
        client_ip: Optional[str],
        request_id: str,
    ) -> GateResult:
        logger.info(f"x402: License {license.id} exists for {resource.id}, skipping payment")
        audit.log_license_reused(
            client_ip=client_ip,
            license_id=license.id,
            resource_id=resource.id,
            buyer=license.buyer_address,
            request_id=request_id,
        )
        return await self._deliver(resource, license, client_ip, request_id)

    async def _deliver(
        self,
        resource: Resource,
        license: License,
        client_ip: Optional[str],
        request_id: str,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> GateResult:
        plaintext = await run_in_threadpool(self.decrypt_resource, resource)
        audit.log_content_delivered(
            client_ip=client_ip,
            resource_id=resource.id,
            license_id=license.id,
            size_bytes=len(plaintext),
            wallet_address=license.buyer_address,
            request_id=request_id,
        )

        headers = {
            "Content-Disposition": (
                f'attachment; filename="{sanitize_filename(resource.title, resource.mime_type)}"'
            ),
            LICENSE_ID_HEADER: license.id,
        }
        if extra_headers:
            headers.update(extra_headers)

        return GateResult(
            status_code=200,
            content=plaintext,
            media_type=resource.mime_type,
            headers=headers,
            license_id=license.id,
            transaction_ref=license.transaction_ref,
        )

    def decrypt_resource(self, resource: Resource) -> bytes:
        cipher_bytes = self.store.get(resource.content_locator)
        return self.vault.decrypt_resource(cipher_bytes, resource.wrapped_key)
