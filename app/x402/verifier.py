# app/x402/verifier.py
"""
On-chain payment verification.

A payment proof is a transaction signature. It is accepted when the
transaction:
1. exists at the configured commitment level
2. is no older than the freshness window
3. executed without error
4. carries pre- and post-transaction token balances
5. credited the recipient's associated token account for the settlement
   mint with the expected amount (within tolerance)

Comparing token-balance deltas instead of parsing instructions keeps the
check independent of how the payer composed the transaction (batched
instructions, different fee payer, etc.).
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.services.solana_ledger import SolanaLedger, TokenBalanceSnapshot, get_ledger

logger = logging.getLogger(__name__)


class VerificationFailure(Enum):
    """Reasons a payment proof is rejected."""
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    ON_CHAIN_FAILURE = "OnChainFailure"
    NO_BALANCE_DATA = "NoBalanceData"
    AMOUNT_MISMATCH = "AmountMismatch"
    AMBIGUOUS_BALANCE = "AmbiguousBalance"
    ALREADY_CONSUMED = "AlreadyConsumed"


@dataclass
class VerificationResult:
    valid: bool
    signature: str
    error: Optional[VerificationFailure] = None
    message: Optional[str] = None
    amount: Optional[Decimal] = None  # observed credit to the recipient
    timestamp: Optional[int] = None  # block time

    @classmethod
    def failure(cls, signature: str, reason: VerificationFailure, message: str, **kwargs) -> "VerificationResult":
        return cls(valid=False, signature=signature, error=reason, message=message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "signature": self.signature,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "amount": float(self.amount) if self.amount is not None else None,
            "timestamp": self.timestamp,
        }


def _matching(balances: List[TokenBalanceSnapshot], account: str, mint: str) -> List[TokenBalanceSnapshot]:
    return [b for b in balances if b.mint == mint and b.account == account]


class PaymentVerifier:
    """Checks that a transaction paid the expected amount to the expected recipient."""

    def __init__(
        self,
        ledger: Optional[SolanaLedger] = None,
        mint: Optional[str] = None,
        tolerance: Optional[Decimal] = None,
    ):
        self.ledger = ledger or get_ledger()
        self.mint = mint or settings.usdc_mint
        self.tolerance = tolerance if tolerance is not None else Decimal(str(settings.PAYMENT_AMOUNT_TOLERANCE))

    def verify(
        self,
        signature: str,
        expected_recipient: str,
        expected_amount: Decimal,
        max_age_seconds: int,
        now: Optional[float] = None,
    ) -> VerificationResult:
        """
        Verify a payment transaction.

        Args:
            signature: Transaction signature supplied by the caller
            expected_recipient: Wallet (owner) address that must be credited
            expected_amount: Amount in token units
            max_age_seconds: Freshness window
            now: Current unix time (defaults to time.time())

        Returns:
            VerificationResult; valid=True only if every check passed

        Raises:
            InputValidationError: Malformed signature or recipient
            LedgerError: The RPC node could not be reached
        """
        expected_amount = Decimal(str(expected_amount))

        tx = self.ledger.get_transaction(signature)
        if tx is None:
            return VerificationResult.failure(
                signature, VerificationFailure.NOT_FOUND, "Transaction not found or not confirmed"
            )

        if tx.block_time is None:
            return VerificationResult.failure(
                signature, VerificationFailure.NOT_FOUND, "Transaction has no block time yet"
            )

        current = int(now if now is not None else time.time())
        age = current - tx.block_time
        if age > max_age_seconds:
            return VerificationResult.failure(
                signature,
                VerificationFailure.EXPIRED,
                f"Transaction too old ({age}s > {max_age_seconds}s)",
                timestamp=tx.block_time,
            )

        if tx.err is not None:
            return VerificationResult.failure(
                signature,
                VerificationFailure.ON_CHAIN_FAILURE,
                f"Transaction failed on chain: {tx.err}",
                timestamp=tx.block_time,
            )

        if tx.pre_token_balances is None or tx.post_token_balances is None:
            return VerificationResult.failure(
                signature,
                VerificationFailure.NO_BALANCE_DATA,
                "No token balances found in transaction",
                timestamp=tx.block_time,
            )

        recipient_account = self.ledger.resolve_token_account(expected_recipient, self.mint)

        post_matches = _matching(tx.post_token_balances, recipient_account, self.mint)
        pre_matches = _matching(tx.pre_token_balances, recipient_account, self.mint)
        if len(post_matches) > 1 or len(pre_matches) > 1:
            logger.error(
                f"Transaction {signature} has {len(post_matches)} post / {len(pre_matches)} pre "
                f"balance entries for {recipient_account}"
            )
            return VerificationResult.failure(
                signature,
                VerificationFailure.AMBIGUOUS_BALANCE,
                f"Multiple token balance entries for recipient account {recipient_account}",
                timestamp=tx.block_time,
            )

        received = Decimal("0")
        if post_matches:
            post = post_matches[0]
            # No pre-balance entry means the account was created by this transaction
            pre_amount = pre_matches[0].amount if pre_matches else 0
            received = Decimal(post.amount - pre_amount) / (Decimal(10) ** post.decimals)

        if received <= 0 or abs(received - expected_amount) > self.tolerance:
            return VerificationResult.failure(
                signature,
                VerificationFailure.AMOUNT_MISMATCH,
                f"Amount mismatch: expected {expected_amount}, got {received}",
                amount=received,
                timestamp=tx.block_time,
            )

        logger.info(f"Verified payment {signature}: {received} to {expected_recipient}")
        return VerificationResult(
            valid=True,
            signature=signature,
            amount=received,
            timestamp=tx.block_time,
        )
