# app/main.py
from typing import Optional

from fastapi import FastAPI
from app.core.config import Settings, settings as default_settings
from app.core.version import VERSION
from app.api.endpoints import resources
from app.x402.gate import ResourceGate
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, gate: Optional[ResourceGate] = None) -> FastAPI:
    """
    Build the content API.

    The gate is built from settings on first use unless one is passed in.
    """
    settings = settings or default_settings

    app = FastAPI(title=settings.PROJECT_NAME)
    app.state.settings = settings
    app.state.gate = gate

    app.include_router(resources.router, prefix="/resources", tags=["resources"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}", "version": VERSION}

    return app


app = create_app()
