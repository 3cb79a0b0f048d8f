# app/api/endpoints/resources.py
import logging

from fastapi import APIRouter, Depends, Path, Request
from fastapi.responses import JSONResponse, Response
from requests.exceptions import RequestException
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_client_ip, get_gate
from app.api.models.resource import ErrorResponse, PaymentRequiredResponse
from app.x402 import audit
from app.x402.codec import X_PAYMENT_HEADER
from app.x402.errors import GatewayError
from app.x402.gate import ResourceGate

logger = logging.getLogger(__name__)
router = APIRouter()


def _error_response(error: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@router.get(
    "/{resource_id}",
    responses={
        200: {"content": {"image/jpeg": {}}, "description": "Decrypted resource"},
        400: {"model": ErrorResponse},
        402: {"model": PaymentRequiredResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def get_resource_content(
    request: Request,
    resource_id: str = Path(..., description="ID of the resource to download"),
    gate: ResourceGate = Depends(get_gate),
):
    """
    Download a resource, paying for it with x402 if needed.

    Without an X-PAYMENT header the response is 402 with payment
    requirements. With a valid payment (or an existing license for the
    signer) the decrypted bytes are returned with an X-License-Id header.
    X-PAYMENT-RESPONSE is only present on the purchase that settled.
    """
    client_ip = get_client_ip(request)
    payment_header = request.headers.get(X_PAYMENT_HEADER)

    try:
        result = await gate.handle(resource_id, payment_header, client_ip=client_ip)
    except GatewayError as e:
        if e.status_code >= 500:
            logger.error(f"x402: {request.url.path} failed for {client_ip}: {e.message}")
        else:
            logger.warning(f"x402: {request.url.path} rejected for {client_ip}: {e.message}")
        return _error_response(e)
    except (RequestException, FileNotFoundError) as e:
        logger.error(f"Content store error for resource {resource_id}: {e}")
        return JSONResponse(status_code=500, content={"error": "Content unavailable"})
    except Exception as e:
        logger.exception(f"Unexpected error serving resource {resource_id}: {e}")
        audit.log_error(
            client_ip=client_ip,
            error_type=type(e).__name__,
            error_message=str(e),
            context={"resource_id": resource_id, "path": request.url.path},
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    if result.content is not None:
        return Response(
            content=result.content,
            status_code=result.status_code,
            media_type=result.media_type,
            headers=result.headers,
        )
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


@router.get("/{resource_id}/preview", responses={404: {"model": ErrorResponse}})
async def get_resource_preview(
    resource_id: str = Path(..., description="ID of the resource to preview"),
    gate: ResourceGate = Depends(get_gate),
):
    """Return the free, degraded preview. No payment logic runs here."""
    try:
        resource = await gate.get_resource(resource_id)
        preview = await run_in_threadpool(gate.store.get, resource.preview_locator)
    except GatewayError as e:
        return _error_response(e)
    except (RequestException, FileNotFoundError) as e:
        logger.error(f"Preview unavailable for resource {resource_id}: {e}")
        return JSONResponse(status_code=500, content={"error": "Preview unavailable"})

    return Response(content=preview, media_type=resource.mime_type)
