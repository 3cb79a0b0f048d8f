# app/x402/facilitator.py
"""
Payment verification and settlement.

A PaymentFacilitator verifies a submitted authorization against the
expected requirements and settles it. Two implementations share the same
reason vocabulary:

- LocalFacilitator runs every check in-process against a chain RPC
  endpoint and settles through an optional on-chain executor. Without an
  executor, settlement is a development stub that returns
  PLACEHOLDER_TRANSACTION.
- RemoteFacilitator forwards ``{paymentPayload, paymentRequirements}`` to
  ``{url}/verify`` and ``{url}/settle`` and relays the answers.

create_facilitator() picks one from settings once, at construction.
"""
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import requests
from starlette.concurrency import run_in_threadpool
from x402.types import PaymentRequirements, SettleResponse, VerifyResponse

from app.core.config import Settings
from app.x402.chain import (
    ChainClient,
    ChainRPCError,
    build_transfer_authorization,
    verify_typed_data_signature,
)
from app.x402.codec import AuthorizationProof, ExactPaymentProof, describe_proof
from app.x402.errors import (
    ConfigurationError,
    FacilitatorError,
    InvalidReason,
    SettlementFailure,
    SettlementReason,
)
from app.x402.executor import SettlementReverted, TransferWithAuthorizationExecutor

logger = logging.getLogger(__name__)

PLACEHOLDER_TRANSACTION = "0x" + "0" * 64


def normalize_resource_id(resource_id: Optional[str]) -> Optional[str]:
    """Canonical lowercase UUID form; anything else is returned unchanged."""
    if resource_id is None:
        return None
    try:
        return str(uuid.UUID(resource_id))
    except (ValueError, AttributeError, TypeError):
        return resource_id


class VerifyResult(VerifyResponse):
    """x402 verify response with constructors for our reason codes."""

    payer: Optional[str] = None

    @classmethod
    def valid(cls, payer: Optional[str] = None) -> "VerifyResult":
        return cls(is_valid=True, payer=payer)

    @classmethod
    def invalid(cls, reason: InvalidReason, payer: Optional[str] = None) -> "VerifyResult":
        return cls(is_valid=False, invalid_reason=reason.value, payer=payer)


class SettleResult(SettleResponse):
    @property
    def is_placeholder(self) -> bool:
        return self.transaction == PLACEHOLDER_TRANSACTION


class PaymentFacilitator(ABC):
    """Verify/settle capability used by the resource gate."""

    mode: str = "abstract"

    @abstractmethod
    async def verify(self, proof: AuthorizationProof, requirements: PaymentRequirements) -> VerifyResult:
        ...

    @abstractmethod
    async def settle(self, proof: AuthorizationProof, requirements: PaymentRequirements) -> SettleResult:
        ...


class LocalFacilitator(PaymentFacilitator):
    """
    In-process verification.

    Checks run in a fixed order and stop at the first failure:
    resource binding, amount, recipient, validity window, payer balance,
    EIP-712 signature.
    """

    mode = "local"

    def __init__(
        self,
        chain_client: Optional[ChainClient],
        chain_id: int,
        executor: Optional[TransferWithAuthorizationExecutor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._chain = chain_client
        self.chain_id = chain_id
        self._executor = executor
        self._clock = clock

    @property
    def chain(self) -> ChainClient:
        if self._chain is None:
            raise ConfigurationError("BASE_RPC_URL not configured")
        return self._chain

    async def verify(self, proof: AuthorizationProof, requirements: PaymentRequirements) -> VerifyResult:
        if not isinstance(proof, ExactPaymentProof):
            logger.warning(f"x402: Rejecting unsupported scheme '{proof.scheme}'")
            return VerifyResult.invalid(InvalidReason.UNSUPPORTED_SCHEME)

        payer = proof.signer
        auth = proof.payload.authorization
        extra = requirements.extra or {}
        required_amount = int(requirements.max_amount_required)

        expected_resource = normalize_resource_id(extra.get("resourceId"))
        if proof.resource_id is not None and normalize_resource_id(proof.resource_id) != expected_resource:
            return VerifyResult.invalid(InvalidReason.RESOURCE_MISMATCH, payer)

        if auth.value < required_amount:
            return VerifyResult.invalid(InvalidReason.AMOUNT_MISMATCH, payer)

        if auth.recipient.lower() != requirements.pay_to.lower():
            return VerifyResult.invalid(InvalidReason.RECIPIENT_MISMATCH, payer)

        # Same bounds the token contract enforces: validAfter < now < validBefore
        now = int(self._clock())
        if not (auth.valid_after < now < auth.valid_before):
            return VerifyResult.invalid(InvalidReason.AUTHORIZATION_EXPIRED, payer)

        try:
            balance = await run_in_threadpool(self.chain.read_balance, requirements.asset, payer)
        except (requests.RequestException, ChainRPCError) as e:
            logger.error(f"x402: Balance lookup failed for {payer}: {e}")
            raise FacilitatorError(
                f"Balance lookup failed: {e}", reason=SettlementReason.FACILITATOR_UNAVAILABLE.value
            ) from e
        if balance < required_amount:
            logger.info(f"x402: Payer {payer} balance {balance} below required {required_amount}")
            return VerifyResult.invalid(InvalidReason.INSUFFICIENT_FUNDS, payer)

        typed_data = build_transfer_authorization(
            signer=auth.signer,
            recipient=auth.recipient,
            value=auth.value,
            valid_after=auth.valid_after,
            valid_before=auth.valid_before,
            nonce=auth.nonce,
            token_name=extra.get("name", "USDC"),
            token_version=extra.get("version", "2"),
            chain_id=self.chain_id,
            verifying_contract=requirements.asset,
        )
        if not verify_typed_data_signature(typed_data, proof.payload.signature, payer):
            return VerifyResult.invalid(InvalidReason.INVALID_SIGNATURE, payer)

        logger.info(f"x402: Payment verified locally: {describe_proof(proof)}")
        return VerifyResult.valid(payer)

    async def settle(self, proof: AuthorizationProof, requirements: PaymentRequirements) -> SettleResult:
        if not isinstance(proof, ExactPaymentProof):
            return SettleResult(
                success=False,
                network=requirements.network,
                error_reason=InvalidReason.UNSUPPORTED_SCHEME.value,
            )

        if self._executor is None:
            logger.warning("x402: No settlement executor configured - returning placeholder transaction")
            return SettleResult(
                success=True,
                transaction=PLACEHOLDER_TRANSACTION,
                network=requirements.network,
                payer=proof.signer,
            )

        auth = proof.payload.authorization
        try:
            tx_ref = await run_in_threadpool(
                self._executor.transfer_with_authorization,
                token_address=requirements.asset,
                signer=auth.signer,
                recipient=auth.recipient,
                value=auth.value,
                valid_after=auth.valid_after,
                valid_before=auth.valid_before,
                nonce=auth.nonce,
                signature=proof.payload.signature,
            )
        except SettlementReverted as e:
            logger.error(f"x402: Settlement reverted for {describe_proof(proof)}: {e}")
            return self._settle_failed(SettlementReason.TRANSACTION_REVERTED, requirements, proof)
        except Exception as e:
            logger.error(f"x402: On-chain settlement failed for {describe_proof(proof)}: {e}")
            return self._settle_failed(SettlementReason.SETTLEMENT_FAILED, requirements, proof)

        return SettleResult(
            success=True,
            transaction=tx_ref,
            network=requirements.network,
            payer=proof.signer,
        )

    @staticmethod
    def _settle_failed(
        reason: SettlementReason, requirements: PaymentRequirements, proof: ExactPaymentProof
    ) -> SettleResult:
        return SettleResult(
            success=False,
            network=requirements.network,
            error_reason=reason.value,
            payer=proof.signer,
        )


class RemoteFacilitator(PaymentFacilitator):
    """Delegates verification and settlement to a facilitator service."""

    mode = "delegated"

    def __init__(self, base_url: str, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @staticmethod
    def request_body(proof: AuthorizationProof, requirements: PaymentRequirements) -> Dict[str, Any]:
        return {
            "paymentPayload": proof.to_wire(),
            "paymentRequirements": requirements.model_dump(by_alias=True),
        }

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = self._session.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
        if not response.ok:
            raise requests.HTTPError(
                f"Facilitator {path} failed: {response.status_code} - {response.text}",
                response=response,
            )
        return response.json()

    async def verify(self, proof: AuthorizationProof, requirements: PaymentRequirements) -> VerifyResult:
        body = self.request_body(proof, requirements)
        try:
            data = await run_in_threadpool(self._post, "/verify", body)
            return VerifyResult.model_validate(data)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"x402: Facilitator verification failed: {e}")
            raise FacilitatorError(
                f"Facilitator verification failed: {e}", reason=SettlementReason.FACILITATOR_UNAVAILABLE.value
            ) from e

    async def settle(self, proof: AuthorizationProof, requirements: PaymentRequirements) -> SettleResult:
        body = self.request_body(proof, requirements)
        try:
            data = await run_in_threadpool(self._post, "/settle", body)
            return SettleResult.model_validate(data)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"x402: Facilitator settlement failed: {e}")
            raise SettlementFailure(
                f"Facilitator settlement failed: {e}", reason=SettlementReason.FACILITATOR_UNAVAILABLE.value
            ) from e


def create_facilitator(settings: Settings) -> PaymentFacilitator:
    """Select the facilitator implementation from configuration."""
    if settings.X402_FACILITATOR_URL:
        logger.info(f"x402: Using delegated facilitator at {settings.X402_FACILITATOR_URL}")
        return RemoteFacilitator(
            base_url=settings.X402_FACILITATOR_URL,
            timeout=settings.X402_FACILITATOR_TIMEOUT_SECONDS,
        )
    return create_local_facilitator(settings)


def create_local_facilitator(settings: Settings) -> LocalFacilitator:
    chain_client = None
    executor = None
    if settings.BASE_RPC_URL:
        chain_client = ChainClient(settings.BASE_RPC_URL, timeout=settings.X402_RPC_TIMEOUT_SECONDS)
        if settings.X402_SETTLEMENT_PRIVATE_KEY:
            executor = TransferWithAuthorizationExecutor(
                rpc_url=settings.BASE_RPC_URL,
                private_key=settings.X402_SETTLEMENT_PRIVATE_KEY,
                chain_id=settings.X402_CHAIN_ID,
                timeout=settings.X402_RPC_TIMEOUT_SECONDS,
            )
    else:
        logger.warning("x402: BASE_RPC_URL not configured - local verification will fail until it is set")

    if executor is None:
        logger.warning("x402: No settlement key configured - settlements return a placeholder transaction")
    logger.info("x402: Using local facilitator")
    return LocalFacilitator(chain_client=chain_client, chain_id=settings.X402_CHAIN_ID, executor=executor)
