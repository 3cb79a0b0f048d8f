# app/api/models/resource.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ErrorResponse(BaseModel):
    """Body of every non-402 error response."""
    error: str = Field(..., description="Stable, human-readable error string")
    reason: Optional[str] = Field(default=None, description="Machine-readable reason code")


class ResourceMetadata(BaseModel):
    """Public details shown alongside a payment challenge."""
    id: str
    title: str
    description: Optional[str] = None
    previewLocator: str
    width: Optional[int] = None
    height: Optional[int] = None
    price: str


class PaymentRequiredResponse(BaseModel):
    """Body of an HTTP 402 response."""
    x402Version: int = Field(..., description="x402 protocol version")
    error: str
    reason: Optional[str] = Field(default=None, description="Verifier rejection reason, if a proof was sent")
    accepts: List[Dict[str, Any]] = Field(..., description="Accepted payment requirements")
    resource: ResourceMetadata
