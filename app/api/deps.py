# app/api/deps.py
"""Request helpers and construction of the shared resource gate."""
import logging

from fastapi import Request

from app.core.config import Settings
from app.services.content_store import ContentStore, InMemoryContentStore, SwarmContentStore
from app.services.database import Database
from app.services.ledger import LicenseLedger
from app.x402.facilitator import create_facilitator
from app.x402.gate import ResourceGate
from app.x402.requirements import RequirementsBuilder
from app.x402.vault import KeyVault

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def get_peer_ip(request: Request) -> str:
    """Socket peer address only; forwarded headers are client-controlled."""
    if request.client:
        return request.client.host
    return "unknown"


def create_content_store(settings: Settings) -> ContentStore:
    if settings.SWARM_BEE_API_URL:
        return SwarmContentStore(
            bee_api_url=str(settings.SWARM_BEE_API_URL),
            postage_batch_id=settings.SWARM_POSTAGE_BATCH_ID,
            timeout=settings.CONTENT_STORE_TIMEOUT_SECONDS,
        )
    logger.warning("SWARM_BEE_API_URL not configured - using in-memory content store")
    return InMemoryContentStore()


def build_gate(settings: Settings) -> ResourceGate:
    """Construct every collaborator once; the gate shares them across requests."""
    database = Database(settings.DATABASE_PATH)
    return ResourceGate(
        database=database,
        ledger=LicenseLedger(database),
        store=create_content_store(settings),
        vault=KeyVault(settings.MASTER_ENCRYPTION_KEY),
        builder=RequirementsBuilder.from_settings(settings),
        facilitator=create_facilitator(settings),
        base_uri=settings.PUBLIC_BASE_URL,
    )


def get_gate(request: Request) -> ResourceGate:
    """FastAPI dependency: the gate owned by the application."""
    app = request.app
    gate = getattr(app.state, "gate", None)
    if gate is None:
        gate = build_gate(app.state.settings)
        app.state.gate = gate
    return gate
