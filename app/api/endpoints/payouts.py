# app/api/endpoints/payouts.py
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, Path
import logging

from app.api.deps import ledger_dependency, payout_dependency
from app.api.models.payment import BalanceResponse, ClaimRequest, ClaimResponse
from app.core.config import settings
from app.core.errors import InputValidationError, LedgerError
from app.services.solana_ledger import AccountNotFound, SolanaLedger, is_valid_address
from app.x402.payout import PayoutExecutor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/claim", response_model=ClaimResponse, response_model_exclude_none=True)
def claim_earnings(
    body: ClaimRequest,
    executor: PayoutExecutor = Depends(payout_dependency),
) -> ClaimResponse:
    """
    Transfer a listing's accrued earnings to its owner.

    Returns the transfer signature and an explorer link. A failed transfer
    leaves the earnings untouched.
    """
    result = executor.claim(body.apiId)
    logger.info(f"Claim for {result.api_id} paid {result.amount} to {result.to}")
    return ClaimResponse(**result.to_response())


@router.get("/balance/{address}", response_model=BalanceResponse)
def get_balance(
    address: str = Path(..., description="Solana wallet address"),
    ledger: SolanaLedger = Depends(ledger_dependency),
) -> BalanceResponse:
    """Settlement-token balance of a wallet. A wallet without a token account has balance 0."""
    if not is_valid_address(address):
        raise InputValidationError("Invalid Solana address", code="InvalidAddress")

    try:
        token_account = ledger.resolve_token_account(address, settings.usdc_mint)
        balance = ledger.get_account_balance(token_account)
    except AccountNotFound:
        balance = Decimal("0")
    except LedgerError as e:
        logger.error(f"Failed to fetch balance for {address}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch balance")

    return BalanceResponse(address=address, balance=float(balance), token=settings.PAYMENT_TOKEN_SYMBOL)
