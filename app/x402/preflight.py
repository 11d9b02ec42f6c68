# app/x402/preflight.py
"""
Pre-flight balance check for payouts.

Before a payout is submitted, the operator wallet's settlement-token
account must hold at least the amount being claimed. Failing here costs
nothing; failing on chain costs a fee and leaves a failed transaction.
"""
import logging
from decimal import Decimal
from typing import Any, Dict

from app.core.config import settings
from app.core.errors import LedgerError
from app.services.solana_ledger import AccountNotFound, SolanaLedger

logger = logging.getLogger(__name__)


def check_payout_balance(ledger: SolanaLedger, operator: str, amount: Decimal) -> Dict[str, Any]:
    """
    Check the operator's token balance against a payout amount.

    Returns:
        Dict containing:
        - ok: bool - whether the balance covers the payout
        - balance: Decimal - operator token balance (0 if the account is missing)
        - required: Decimal - payout amount
        - token_account: str - operator token account checked
        - warning: str or None - reason when not ok
    """
    token_account = ledger.resolve_token_account(operator, settings.usdc_mint)
    try:
        balance = ledger.get_account_balance(token_account)
    except AccountNotFound:
        balance = Decimal("0")
    except LedgerError as e:
        logger.error(f"Pre-flight check: failed to read operator balance: {e}")
        return {
            "ok": False,
            "balance": Decimal("0"),
            "required": amount,
            "token_account": token_account,
            "warning": f"Failed to fetch operator balance: {e}",
        }

    ok = balance >= amount
    warning = None
    if not ok:
        warning = (
            f"Operator balance ({balance} {settings.PAYMENT_TOKEN_SYMBOL}) is below the payout "
            f"amount ({amount} {settings.PAYMENT_TOKEN_SYMBOL}). Top up the payout wallet."
        )
        logger.warning(f"Pre-flight check: {warning}")

    return {
        "ok": ok,
        "balance": balance,
        "required": amount,
        "token_account": token_account,
        "warning": warning,
    }
