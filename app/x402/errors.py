# app/x402/errors.py
"""
Error taxonomy for the payment-gated content flow.

Every error carries the HTTP status it maps to, a stable ``error`` string
and, where a client can branch on it, a machine-readable ``reason``.
"""
from enum import Enum
from typing import Any, Dict, Optional


class InvalidReason(str, Enum):
    """Reasons a payment authorization is rejected by a verifier."""
    RESOURCE_MISMATCH = "ResourceMismatch"
    AMOUNT_MISMATCH = "AmountMismatch"
    RECIPIENT_MISMATCH = "RecipientMismatch"
    AUTHORIZATION_EXPIRED = "AuthorizationExpired"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    INVALID_SIGNATURE = "InvalidSignature"
    UNSUPPORTED_SCHEME = "UnsupportedScheme"


class SettlementReason(str, Enum):
    """Reasons a settlement or facilitator call fails."""
    SETTLEMENT_FAILED = "SettlementFailed"
    TRANSACTION_REVERTED = "TransactionReverted"
    FACILITATOR_UNAVAILABLE = "FacilitatorUnavailable"


class GatewayError(Exception):
    """Base class for errors that terminate a gated request."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        self.message = message or self.error
        self.reason = reason
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        # 5xx bodies carry only the fixed error string
        error = self.error if self.status_code >= 500 else self.message
        body: Dict[str, Any] = {"error": error}
        if self.reason:
            body["reason"] = self.reason
        return body


class ClientInputError(GatewayError):
    status_code = 400
    error = "Invalid request"


class MalformedProof(ClientInputError):
    """X-PAYMENT header is not base64-encoded JSON."""
    error = "Malformed payment proof"


class InvalidProofShape(ClientInputError):
    """X-PAYMENT decoded but is missing fields or has badly formatted ones."""
    error = "Invalid payment proof format"


class InvalidResourceId(ClientInputError):
    error = "Invalid resource ID format"


class NotFoundError(GatewayError):
    status_code = 404
    error = "Resource not found"


class PaymentInvalid(GatewayError):
    status_code = 402
    error = "Payment verification failed"


class SettlementFailure(GatewayError):
    status_code = 500
    error = "Payment settlement failed"


class FacilitatorError(GatewayError):
    """Remote facilitator unreachable or answered with a non-2xx status."""
    status_code = 500
    error = "Payment facilitator unavailable"


class ConfigurationError(GatewayError):
    status_code = 500
    error = "Server misconfigured"


class DecryptionFailed(GatewayError):
    status_code = 500
    error = "Decryption failed"


class LicenseAlreadyExists(GatewayError):
    """Unique (resource, buyer) constraint hit on license insert."""
    status_code = 409
    error = "License already exists"
