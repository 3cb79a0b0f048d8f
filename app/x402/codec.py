# app/x402/codec.py
"""
Authorization codec for the X-PAYMENT header.

The header carries base64(JSON) of an x402 payment payload. Decoding is
pure: base64 -> JSON -> a strict, typed proof object. Proofs for the
``exact`` scheme (ERC-3009 transferWithAuthorization) are fully validated;
any other scheme becomes an ``UnsupportedPaymentProof`` so that verifiers
can reject it explicitly instead of misreading its payload.
"""
import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)
from x402.encoding import safe_base64_encode

from app.x402.errors import InvalidProofShape, MalformedProof

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
NONCE_PATTERN = r"^0x[a-fA-F0-9]{64}$"
SIGNATURE_PATTERN = r"^0x[a-fA-F0-9]+$"

REQUIRED_FIELDS = ("x402Version", "scheme", "network", "payload")

_UINT_RE = re.compile(r"^[0-9]+$")


class ExactAuthorization(BaseModel):
    """The ERC-3009 authorization tuple signed by the payer."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    signer: str = Field(..., alias="from", pattern=ADDRESS_PATTERN)
    recipient: str = Field(..., alias="to", pattern=ADDRESS_PATTERN)
    value: int = Field(..., ge=0)
    valid_after: int = Field(..., alias="validAfter", ge=0)
    valid_before: int = Field(..., alias="validBefore", ge=0)
    nonce: str = Field(..., pattern=NONCE_PATTERN)

    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def _parse_uint(cls, v: Any) -> int:
        # x402 clients send uint256 values as decimal strings
        if isinstance(v, bool):
            raise ValueError("must be an unsigned integer")
        if isinstance(v, int):
            return v
        if isinstance(v, str) and _UINT_RE.match(v):
            return int(v)
        raise ValueError("must be an unsigned integer or decimal string")

    @field_serializer("value", "valid_after", "valid_before")
    def _serialize_uint(self, v: int) -> str:
        return str(v)


class ExactPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    signature: str = Field(..., pattern=SIGNATURE_PATTERN)
    authorization: ExactAuthorization
    resource_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("resourceId", "imageId", "resource_id"),
        serialization_alias="resourceId",
    )


class ExactPaymentProof(BaseModel):
    """A signed ``exact`` scheme payment authorization."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    x402_version: int = Field(..., alias="x402Version")
    scheme: Literal["exact"]
    network: str
    payload: ExactPayload

    @property
    def signer(self) -> str:
        return self.payload.authorization.signer

    @property
    def recipient(self) -> str:
        return self.payload.authorization.recipient

    @property
    def value(self) -> int:
        return self.payload.authorization.value

    @property
    def nonce(self) -> str:
        return self.payload.authorization.nonce

    @property
    def resource_id(self) -> Optional[str]:
        return self.payload.resource_id

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class UnsupportedPaymentProof(BaseModel):
    """A structurally valid envelope for a scheme this server does not accept."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    x402_version: int = Field(..., alias="x402Version")
    scheme: str
    network: str
    payload: Dict[str, Any]

    @property
    def signer(self) -> Optional[str]:
        return None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


AuthorizationProof = Union[ExactPaymentProof, UnsupportedPaymentProof]


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


def parse_proof(data: Any) -> AuthorizationProof:
    """
    Validate an already-decoded JSON payment payload.

    Raises:
        InvalidProofShape: If required fields are missing or malformed
    """
    if not isinstance(data, dict):
        raise InvalidProofShape("Invalid payment proof format: expected a JSON object")

    missing = [name for name in REQUIRED_FIELDS if name not in data]
    if missing:
        raise InvalidProofShape(
            f"Invalid payment proof format: missing {', '.join(missing)}"
        )

    model = ExactPaymentProof if data.get("scheme") == "exact" else UnsupportedPaymentProof
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidProofShape(
            f"Invalid payment proof format: {_describe_validation_error(e)}"
        ) from e


def decode_payment_header(header_value: str) -> AuthorizationProof:
    """
    Decode the X-PAYMENT header into a typed proof.

    Args:
        header_value: Base64-encoded JSON payment payload

    Returns:
        ExactPaymentProof or UnsupportedPaymentProof

    Raises:
        MalformedProof: If the header is not valid base64 or not valid JSON
        InvalidProofShape: If the JSON does not have the expected shape
    """
    if not header_value or not header_value.strip():
        raise MalformedProof("Malformed payment proof: empty header")

    try:
        raw = base64.b64decode(header_value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedProof("Malformed payment proof: invalid base64") from e

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedProof("Malformed payment proof: invalid JSON") from e

    return parse_proof(data)


def describe_proof(proof: AuthorizationProof) -> Dict[str, Any]:
    """Loggable view of a proof. The signature is never included."""
    if isinstance(proof, ExactPaymentProof):
        return {
            "scheme": proof.scheme,
            "network": proof.network,
            "signer": proof.signer,
            "value": str(proof.value),
            "nonce": proof.nonce,
        }
    return {"scheme": proof.scheme, "network": proof.network}


def encode_payment_response(transaction_ref: str, license_id: str, network: str) -> str:
    """
    Encode the X-PAYMENT-RESPONSE header sent on first purchase.

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps({
        "transactionRef": transaction_ref,
        "licenseId": license_id,
        "network": network,
    })
    return safe_base64_encode(response_json.encode("utf-8"))
