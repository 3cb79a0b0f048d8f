# app/x402/requirements.py
"""
Payment requirements for the x402 402 challenge.

A resource's stored decimal price is converted into integer token minor
units (USDC has 6 decimals, so $1.00 = 1,000,000 units) with
round-half-up. The output depends only on the resource and the builder's
fixed configuration, so building twice gives identical requirements.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from x402.types import PaymentRequirements

from app.core.config import Settings
from app.services.database import Resource
from app.x402.errors import ConfigurationError

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
SCHEME = "exact"
DEFAULT_MAX_TIMEOUT_SECONDS = 300

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}


def to_minor_units(price: str, decimals: int = 6) -> int:
    """
    Convert a decimal price string into integer minor units.

    Raises:
        ConfigurationError: If the stored price is not a finite non-negative number
    """
    try:
        amount = Decimal(str(price).strip())
    except InvalidOperation as e:
        raise ConfigurationError(f"Stored price is not numeric: {price!r}") from e
    if not amount.is_finite() or amount < 0:
        raise ConfigurationError(f"Stored price is not a valid amount: {price!r}")

    try:
        scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ConfigurationError(f"Stored price is out of range: {price!r}") from e
    return int(scaled)


def resource_uri(base_uri: str, resource_id: str) -> str:
    return f"{base_uri.rstrip('/')}/resources/{resource_id}"


class RequirementsBuilder:
    """Builds PaymentRequirements from fixed network/asset settings."""

    def __init__(
        self,
        network: str = "base-sepolia",
        asset: Optional[str] = None,
        token_name: str = "USDC",
        token_version: str = "2",
        decimals: int = 6,
        max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS,
    ):
        self.network = network
        self.asset = asset or USDC_ADDRESSES.get(network, USDC_ADDRESSES["base-sepolia"])
        self.token_name = token_name
        self.token_version = token_version
        self.decimals = decimals
        self.max_timeout_seconds = max_timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequirementsBuilder":
        return cls(
            network=settings.X402_NETWORK,
            asset=settings.X402_ASSET_ADDRESS,
            token_name=settings.X402_TOKEN_NAME,
            token_version=settings.X402_TOKEN_VERSION,
            decimals=settings.X402_TOKEN_DECIMALS,
            max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
        )

    def build(self, resource: Resource, base_uri: str) -> PaymentRequirements:
        """
        Create PaymentRequirements for a resource.

        Args:
            resource: The resource being sold
            base_uri: Public base URI of this server

        Returns:
            PaymentRequirements for the x402 402 response
        """
        amount = to_minor_units(resource.price, self.decimals)

        return PaymentRequirements(
            scheme=SCHEME,
            network=self.network,
            max_amount_required=str(amount),
            resource=resource_uri(base_uri, resource.id),
            description=f"License for: {resource.title}",
            mime_type=resource.mime_type,
            pay_to=resource.owner_address,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=self.asset,
            extra={
                "name": self.token_name,
                "version": self.token_version,
                "resourceId": resource.id,
            },
        )


def resource_metadata(resource: Resource) -> Dict[str, Any]:
    """Public metadata shown alongside a 402 challenge."""
    return {
        "id": resource.id,
        "title": resource.title,
        "description": resource.description,
        "previewLocator": resource.preview_locator,
        "width": resource.width,
        "height": resource.height,
        "price": resource.price,
    }


def create_challenge_body(
    requirements: PaymentRequirements,
    resource: Resource,
    error_message: str = "X-PAYMENT header is required",
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Body of an HTTP 402 Payment Required response."""
    body: Dict[str, Any] = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "accepts": [requirements.model_dump(by_alias=True)],
        "resource": resource_metadata(resource),
    }
    if reason:
        body["reason"] = reason
    return body
