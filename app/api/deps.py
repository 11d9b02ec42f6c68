# app/api/deps.py
"""FastAPI dependencies shared by the routers."""
from fastapi import Depends, HTTPException, Request

from app.core.config import settings
from app.core.errors import ConfigurationError
from app.services.solana_ledger import SolanaLedger, get_ledger
from app.services.storage import Storage, get_storage
from app.x402.gateway import ProxyGateway
from app.x402.payout import PayoutExecutor


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def ledger_dependency() -> SolanaLedger:
    return get_ledger()


def storage_dependency() -> Storage:
    return get_storage()


def gateway_dependency(storage: Storage = Depends(storage_dependency)) -> ProxyGateway:
    return ProxyGateway(storage=storage)


def payout_dependency(
    storage: Storage = Depends(storage_dependency),
    ledger: SolanaLedger = Depends(ledger_dependency),
) -> PayoutExecutor:
    return PayoutExecutor(storage=storage, ledger=ledger)


def verify_api_key(request: Request) -> None:
    """Operator-only routes require the configured API key."""
    if not settings.AUDIT_API_KEY:
        raise ConfigurationError("Audit access is not configured")
    if request.headers.get(settings.API_KEY_NAME) != settings.AUDIT_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
