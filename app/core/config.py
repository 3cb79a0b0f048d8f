# app/core/config.py
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Image License Gateway"
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Persistence (resources + licenses)
    DATABASE_PATH: str = "data/gateway.db"

    # 32-byte hex key used to wrap per-resource content keys
    MASTER_ENCRYPTION_KEY: Optional[str] = None

    # Content store (Swarm Bee node)
    SWARM_BEE_API_URL: Optional[AnyHttpUrl] = None
    SWARM_POSTAGE_BATCH_ID: Optional[str] = None
    CONTENT_STORE_TIMEOUT_SECONDS: float = 60.0

    # x402 payment settings
    X402_NETWORK: str = "base-sepolia"
    X402_CHAIN_ID: int = 84532
    X402_ASSET_ADDRESS: Optional[str] = None
    X402_TOKEN_NAME: str = "USDC"
    X402_TOKEN_VERSION: str = "2"
    X402_TOKEN_DECIMALS: int = 6
    X402_MAX_TIMEOUT_SECONDS: int = 300

    # Delegated mode is enabled when a facilitator URL is set
    X402_FACILITATOR_URL: Optional[str] = None
    X402_FACILITATOR_TIMEOUT_SECONDS: float = 15.0

    # Local mode chain access
    BASE_RPC_URL: Optional[str] = None
    X402_RPC_TIMEOUT_SECONDS: float = 10.0
    X402_SETTLEMENT_PRIVATE_KEY: Optional[str] = None

    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Standalone facilitator
    FACILITATOR_RATE_LIMIT: int = 100
    FACILITATOR_RATE_LIMIT_WINDOW_SECONDS: int = 900

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
