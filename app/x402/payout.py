# app/x402/payout.py
"""
Provider payouts.

A claim transfers a listing's full accrued earning from the operator
wallet to the listing owner and then resets the earning to zero.

Guarantees:
- a failed transfer leaves the earning untouched
- the earning is only ever reset to exactly zero, and only if it still
  holds the value that was paid out (compare-and-swap)
- concurrent claims on one listing are refused while a claim guard is held
- if the reset fails after tokens were sent, or a submitted transfer is
  never confirmed, the guard stays in place so the listing cannot be paid
  twice before it is reconciled
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from app.core.config import settings
from app.core.errors import (
    ConflictError,
    GatewayError,
    InputValidationError,
    NotFoundError,
    PersistenceError,
    TransferFailed,
)
from app.services.solana_ledger import (
    SolanaLedger,
    explorer_url,
    get_ledger,
    is_valid_address,
    load_keypair,
)
from app.services.storage import Storage
from app.x402 import audit
from app.x402.preflight import check_payout_balance

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    api_id: str
    signature: str
    amount: Decimal
    to: str
    explorer: str
    earning_reset: bool = True

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "signature": self.signature,
            "amount": float(self.amount),
            "to": self.to,
            "explorer": self.explorer,
        }
        if not self.earning_reset:
            body["warning"] = "Payout sent but earnings could not be reset; pending reconciliation"
        return body


class PayoutExecutor:
    def __init__(self, storage: Storage, ledger: Optional[SolanaLedger] = None):
        self.storage = storage
        self._ledger = ledger

    @property
    def ledger(self) -> SolanaLedger:
        if self._ledger is None:
            self._ledger = get_ledger()
        return self._ledger

    def claim(self, api_id: Optional[str]) -> PayoutResult:
        """
        Pay out a listing's accrued earning to its owner.

        Args:
            api_id: The listing's cid

        Raises:
            InputValidationError: Missing id, invalid owner address or nothing to claim
            NotFoundError: Unknown listing
            ConflictError: Another claim on this listing is in progress
            TransferFailed: The transfer was not confirmed; earnings unchanged.
                If it was already submitted the claim guard is kept
        """
        if not api_id or not api_id.strip():
            raise InputValidationError("apiId is required", code="MissingCid")
        api_id = api_id.strip()

        if self.storage.get_listing_by_cid(api_id) is None:
            raise NotFoundError("API not found", code="ApiNotFound")

        if not self.storage.acquire_claim(api_id):
            raise ConflictError("A claim for this API is already in progress", code="ClaimInProgress")

        try:
            # Re-read under the guard so the amount paid is the amount reset
            listing = self.storage.get_listing_by_cid(api_id)
            if listing is None:
                raise NotFoundError("API not found", code="ApiNotFound")
            signature = self._transfer(api_id, listing.ownerId, listing.earning)
        except TransferFailed as e:
            submitted = e.details.get("signature") if isinstance(e.details, dict) else None
            if submitted:
                # Tokens may still land; hold the guard until reconciled
                logger.error(
                    f"Payout {submitted} for {api_id} was submitted but not confirmed. "
                    f"Claim guard kept until reconciled."
                )
                audit.log_payout_unconfirmed(api_id, listing.ownerId, listing.earning, submitted, str(e))
            else:
                self._release(api_id)
            raise
        except GatewayError:
            self._release(api_id)
            raise

        owner, earning = listing.ownerId, listing.earning
        link = explorer_url(signature)
        audit.log_payout_sent(api_id, owner, earning, signature, link)

        earning_reset = self._reset(api_id, earning, signature)
        if earning_reset:
            self._release(api_id)

        return PayoutResult(
            api_id=api_id,
            signature=signature,
            amount=earning,
            to=owner,
            explorer=link,
            earning_reset=earning_reset,
        )

    def _transfer(self, api_id: str, owner: str, earning: Decimal) -> str:
        if not is_valid_address(owner):
            raise InputValidationError("Invalid owner Solana address", code="InvalidAddress")
        if earning <= 0:
            raise InputValidationError("No earnings to claim", code="NothingToClaim")

        signer = load_keypair(settings.SOLANA_PRIVATE_KEY)
        mint = settings.usdc_mint

        preflight = check_payout_balance(self.ledger, str(signer.pubkey()), earning)
        if not preflight["ok"]:
            audit.log_payout_failed(api_id, owner, earning, preflight["warning"])
            raise TransferFailed(f"USDC transfer failed: {preflight['warning']}")

        to_account = self.ledger.resolve_token_account(owner, mint)
        try:
            signature = self.ledger.submit_transfer(
                signer, to_account, mint, earning, settings.SOLANA_TOKEN_DECIMALS
            )
        except TransferFailed as e:
            logger.error(f"Payout of {earning} to {owner} for {api_id} failed: {e}")
            audit.log_payout_failed(api_id, owner, earning, str(e))
            raise

        logger.info(f"Paid out {earning} to {owner} for {api_id}: {signature}")
        return signature

    def _reset(self, api_id: str, paid: Decimal, signature: str) -> bool:
        try:
            if self.storage.reset_earning(api_id, paid):
                return True
            error = "earning changed while the payout was in flight"
        except PersistenceError as e:
            error = str(e)

        logger.error(
            f"Payout {signature} for {api_id} succeeded but earning reset failed: {error}. "
            f"Claim guard kept until reconciled."
        )
        audit.log_earning_reset_failed(api_id, paid, signature, error)
        return False

    def _release(self, api_id: str) -> None:
        try:
            self.storage.release_claim(api_id)
        except PersistenceError as e:
            logger.error(f"Failed to release claim guard for {api_id}: {e}")
