# app/core/config.py
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

# Value shipped in .env.example until the Move package is published
PACKAGE_ID_PLACEHOLDER = "DEPLOY_AND_UPDATE_THIS"


class Settings(BaseSettings):
    PROJECT_NAME: str = "Sui x402 Content Gateway"
    API_V1_STR: str = "/api/v1"

    # Ledger connection
    SUI_NETWORK: str = "testnet"
    SUI_RPC_URL: AnyHttpUrl = "https://fullnode.testnet.sui.io:443"
    PACKAGE_ID: str = PACKAGE_ID_PLACEHOLDER
    EXPLORER_BASE_URL: str = "https://suiscan.xyz"

    # Gas sponsorship. Without a key requesters pay their own gas.
    SPONSOR_PRIVATE_KEY: Optional[str] = None

    # On-chain entry point that pays the creator and mints the receipt
    X402_MOVE_MODULE: str = "content_access"
    X402_PURCHASE_FUNCTION: str = "purchase_content"
    X402_RECEIPT_STRUCT: str = "AccessReceipt"
    X402_COIN_TYPE: str = "0x2::sui::SUI"
    X402_CHALLENGE_TTL_SECONDS: int = 300

    # Submission and finality
    X402_FINALITY_TIMEOUT_SECONDS: float = 30.0
    X402_FINALITY_POLL_INTERVAL_SECONDS: float = 0.5
    X402_SPONSOR_QUEUE_TIMEOUT_SECONDS: float = 60.0
    X402_RPC_TIMEOUT_SECONDS: float = 10.0
    X402_RPC_MAX_RETRIES: int = 3
    X402_RPC_BACKOFF_SECONDS: float = 0.2

    # Sponsor gas thresholds, in SUI
    X402_SPONSOR_GAS_WARN_THRESHOLD: float = 1.0
    X402_SPONSOR_GAS_CRITICAL_THRESHOLD: float = 0.05

    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Comma-separated origins for the wallet frontend
    CORS_ORIGINS: str = "*"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
