# app/main.py
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.errors import GatewayError, LedgerError
from app.api.deps import ledger_dependency
from app.api.endpoints import audit, fluxapi, listings, payouts
from app.api.models.payment import HealthResponse
from app.services.solana_ledger import SolanaLedger
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
)

# The marketplace frontend calls the gateway from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(fluxapi.router, tags=["fluxapi"])
app.include_router(listings.router, tags=["listings"])
app.include_router(payouts.router, tags=["payouts"])
app.include_router(audit.router, tags=["audit"])


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render domain errors with their status and structured reason."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/", summary="Liveness Check", tags=["default"])
def read_root():
    """ Basic liveness endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}


@app.get("/health", response_model=HealthResponse, tags=["default"])
def health(ledger: SolanaLedger = Depends(ledger_dependency)):
    """Gateway health including Solana RPC reachability."""
    try:
        slot = ledger.get_network_slot()
    except LedgerError as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=500, content={"status": "unhealthy", "error": e.message})

    return HealthResponse(
        status="healthy",
        cluster=settings.SOLANA_CLUSTER,
        currentSlot=slot,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
