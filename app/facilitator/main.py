# app/facilitator/main.py
"""
Standalone x402 facilitator service.

Serves /verify and /settle in two body shapes:

- the resource server wire body ``{paymentPayload, paymentRequirements}``,
  answered by an in-process LocalFacilitator, so that a gateway running in
  delegated mode can point X402_FACILITATOR_URL here;
- the legacy signed-message bodies used by older web clients.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from x402.types import PaymentRequirements

from app.api.deps import get_peer_ip
from app.core.config import Settings, settings as default_settings
from app.core.version import VERSION
from app.facilitator.signature import verify_signature
from app.x402.chain import ChainClient
from app.x402.codec import parse_proof
from app.x402.errors import GatewayError
from app.x402.facilitator import PaymentFacilitator, create_local_facilitator
from app.x402.ratelimit import RateLimiter, get_rate_limit_headers

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_NAME = "x402-facilitator"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject clients over the per-IP limit with 429 before any route runs."""

    def __init__(self, app, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        client_ip = get_peer_ip(request)
        is_allowed, reason, stats = self.limiter.check(client_ip)
        headers = get_rate_limit_headers(stats)

        if not is_allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many requests from this IP, please try again later.",
                    "detail": reason,
                },
                headers=headers,
            )

        response = await call_next(request)
        for header, value in headers.items():
            response.headers[header] = value
        return response


async def _read_json(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _parse_wire_body(body: Dict[str, Any]):
    """
    Raises:
        GatewayError: If the payload is malformed
        ValidationError: If the requirements are malformed
    """
    proof = parse_proof(body.get("paymentPayload"))
    requirements = PaymentRequirements.model_validate(body.get("paymentRequirements") or {})
    return proof, requirements


def _missing(body: Dict[str, Any], *names: str) -> bool:
    return any(not body.get(name) for name in names)


def create_app(
    settings: Optional[Settings] = None,
    facilitator: Optional[PaymentFacilitator] = None,
    chain: Optional[ChainClient] = None,
    limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    settings = settings or default_settings
    facilitator = facilitator or create_local_facilitator(settings)
    if chain is None and settings.BASE_RPC_URL:
        chain = ChainClient(settings.BASE_RPC_URL, timeout=settings.X402_RPC_TIMEOUT_SECONDS)
    limiter = limiter or RateLimiter(
        limit=settings.FACILITATOR_RATE_LIMIT,
        window_seconds=settings.FACILITATOR_RATE_LIMIT_WINDOW_SECONDS,
    )

    app = FastAPI(title="x402 Facilitator")
    app.state.facilitator = facilitator
    app.state.rate_limiter = limiter
    app.add_middleware(RateLimitMiddleware, limiter=limiter)

    @app.get("/health", tags=["default"])
    def health():
        return {"status": "ok", "service": SERVICE_NAME, "version": VERSION}

    @app.post("/verify", tags=["x402"])
    async def verify(request: Request):
        """
        Verify a payment authorization or a signed message.

        Legacy body: ``{signature, message, address}`` -> ``{verified}``
        (400 when a field is missing, 401 when the signature is invalid).
        Wire body: ``{paymentPayload, paymentRequirements}`` ->
        ``{isValid, invalidReason, payer}``.
        """
        body = await _read_json(request)
        if body is None:
            return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object"})

        if "paymentPayload" in body:
            try:
                proof, requirements = _parse_wire_body(body)
                result = await facilitator.verify(proof, requirements)
            except GatewayError as e:
                return JSONResponse(status_code=e.status_code, content=e.to_dict())
            except ValidationError as e:
                logger.warning(f"Rejecting malformed payment requirements: {e}")
                return JSONResponse(status_code=400, content={"error": "Invalid payment requirements"})
            return result.model_dump(by_alias=True, exclude_none=True)

        if _missing(body, "signature", "message", "address"):
            return JSONResponse(
                status_code=400,
                content={"error": "Missing required fields: signature, message, address"},
            )

        address = body["address"]
        is_valid = await run_in_threadpool(verify_signature, address, body["message"], body["signature"], chain)
        if not is_valid:
            return JSONResponse(status_code=401, content={"verified": False, "error": "Invalid signature"})

        return {"verified": True, "address": address, "message": "Signature verified successfully"}

    @app.post("/settle", tags=["x402"])
    async def settle(request: Request):
        """
        Settle a payment authorization.

        Wire body answers ``{success, transaction, network, errorReason}``.
        The legacy body is acknowledged without on-chain action.
        """
        body = await _read_json(request)
        if body is None:
            return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object"})

        if "paymentPayload" in body:
            try:
                proof, requirements = _parse_wire_body(body)
                result = await facilitator.settle(proof, requirements)
            except GatewayError as e:
                return JSONResponse(status_code=e.status_code, content=e.to_dict())
            except ValidationError as e:
                logger.warning(f"Rejecting malformed payment requirements: {e}")
                return JSONResponse(status_code=400, content={"error": "Invalid payment requirements"})
            if not result.success:
                logger.error(f"Settlement failed: {result.error_reason}")
            return result.model_dump(by_alias=True, exclude_none=True)

        if _missing(body, "paymentId", "amount", "recipient"):
            return JSONResponse(
                status_code=400,
                content={"error": "Missing required fields: paymentId, amount, recipient"},
            )

        logger.info(f"Acknowledged legacy settlement {body['paymentId']} to {body['recipient']}")
        return {
            "settled": True,
            "paymentId": body["paymentId"],
            "recipient": body["recipient"],
            "amount": body["amount"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": "Payment settled successfully",
        }

    @app.get("/settle/{payment_id}", tags=["x402"])
    def settlement_status(payment_id: str):
        # No settlement store is kept here
        return {"paymentId": payment_id, "settled": False, "message": "Payment settlement status"}

    return app


app = create_app()
