# app/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.api.endpoints import content, receipts
from app.x402.chain import is_package_deployed, network_id
from app.x402.preflight import check_sponsor_balance
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-PAYMENT-RESPONSE"],
)

# The prefix ensures all routes start with /api/v1
app.include_router(content.router, prefix=f"{settings.API_V1_STR}/content", tags=["content"])
app.include_router(receipts.router, prefix=f"{settings.API_V1_STR}/receipts", tags=["receipts"])


@app.get("/", summary="Service Info", tags=["default"])
def read_root():
    """ Basic service info endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "network": network_id(),
        "docs": "/docs",
    }


@app.get("/health", summary="Health Check", tags=["default"])
def health():
    """
    Reports network, package deployment and sponsor status.

    ``status`` is "degraded" while no package is deployed or the sponsor
    balance is critically low; reads still work in that state. Before
    deployment the ledger is not contacted at all.
    """
    deployed = is_package_deployed()
    sponsor = check_sponsor_balance(fetch_balance=deployed)

    degraded = not deployed or (sponsor["enabled"] and sponsor["is_critical"])
    return {
        "status": "degraded" if degraded else "ok",
        "network": network_id(),
        "rpcUrl": str(settings.SUI_RPC_URL),
        "packageId": settings.PACKAGE_ID,
        "deployed": deployed,
        "sponsor": {
            "enabled": sponsor["enabled"],
            "address": sponsor["address"],
            "balanceSui": sponsor["balance_sui"],
            "ok": sponsor["ok"],
            "isCritical": sponsor["is_critical"],
            "warning": sponsor["warning"],
        },
    }
