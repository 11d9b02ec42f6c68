# app/services/solana_ledger.py
"""
Solana ledger client.

Wraps the JSON-RPC connection used by the gateway to:
- derive associated token accounts for the settlement mint
- read token balances
- submit and confirm SPL token transfers (payouts)
- fetch transactions with their token-balance snapshots (payment proofs)
- probe network liveness

Read calls are retried on transport errors. Transfers are never retried:
resubmitting a transfer can pay twice.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from functools import lru_cache
from typing import Callable, List, Optional, TypeVar

import base58
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.core import RPCException, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    get_associated_token_address,
    transfer_checked,
)

from app.core.config import settings
from app.core.errors import (
    ConfigurationError,
    InputValidationError,
    LedgerError,
    NotFoundError,
    TransferFailed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPLORER_BASE_URL = "https://explorer.solana.com/tx"


class AccountNotFound(NotFoundError):
    """The token account has never been initialized on chain."""
    code = "AccountNotFound"


@dataclass
class TokenBalanceSnapshot:
    """One pre- or post-transaction token balance entry, with its account resolved."""
    account: Optional[str]
    mint: str
    amount: int  # smallest units
    decimals: int

    @property
    def ui_amount(self) -> Decimal:
        return Decimal(self.amount) / (Decimal(10) ** self.decimals)


@dataclass
class TransactionRecord:
    signature: str
    slot: int
    block_time: Optional[int]
    err: Optional[str]
    pre_token_balances: Optional[List[TokenBalanceSnapshot]] = None
    post_token_balances: Optional[List[TokenBalanceSnapshot]] = None
    account_keys: List[str] = field(default_factory=list)


def to_smallest_units(amount: Decimal, decimals: int) -> int:
    """Convert a token amount to integer base units, flooring any excess precision."""
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_DOWN))


def is_valid_address(address: Optional[str]) -> bool:
    """Check that an address is a base58 public key on the ed25519 curve."""
    if not address or not isinstance(address, str):
        return False
    try:
        pubkey = Pubkey.from_string(address.strip())
    except (ValueError, TypeError):
        return False
    return pubkey.is_on_curve()


def load_keypair(secret: Optional[str]) -> Keypair:
    """
    Parse a signer key from configuration.

    Supports both base58 strings and JSON byte arrays ("[12, 34, ...]").
    """
    if not secret:
        raise ConfigurationError("SOLANA_PRIVATE_KEY not set in environment")
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_bytes(base58.b58decode(secret))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Failed to parse SOLANA_PRIVATE_KEY: {e}") from e


def explorer_url(signature: str, cluster: Optional[str] = None) -> str:
    """Human-readable explorer link for a transaction."""
    cluster = cluster or settings.SOLANA_CLUSTER
    if cluster == "mainnet-beta":
        return f"{EXPLORER_BASE_URL}/{signature}"
    return f"{EXPLORER_BASE_URL}/{signature}?cluster={cluster}"


def _parse_pubkey(value: str, what: str) -> Pubkey:
    try:
        return Pubkey.from_string(value.strip())
    except (ValueError, TypeError, AttributeError) as e:
        raise InputValidationError(f"Invalid {what}: {value}", code="InvalidAddress") from e


def _account_key_str(key) -> str:
    # Parsed messages wrap keys in ParsedAccount; raw messages hold Pubkeys
    return str(getattr(key, "pubkey", key))


class SolanaLedger:
    """Thin, synchronous wrapper around a Solana RPC client."""

    def __init__(
        self,
        client: Optional[Client] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        self._client = client
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def client(self) -> Client:
        """Lazy initialization of the RPC client."""
        if self._client is None:
            self._client = Client(
                str(settings.SOLANA_RPC_URL),
                commitment=Confirmed,
                timeout=settings.SOLANA_RPC_TIMEOUT_SECONDS,
            )
        return self._client

    def _with_retries(self, operation: str, call: Callable[[], T]) -> T:
        """Run an idempotent read, retrying transport failures."""
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return call()
            except SolanaRpcException as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    logger.warning(f"RPC {operation} attempt {attempt + 1} failed, retrying: {e}")
                    time.sleep(self.retry_delay)
            except RPCException as e:
                raise LedgerError(f"RPC {operation} rejected: {e}") from e

        logger.error(f"RPC {operation} unavailable after {self.max_retries} attempts: {last_error}")
        raise LedgerError(f"RPC {operation} failed: {last_error}")

    def resolve_token_account(self, owner: str, mint: str) -> str:
        """Derive the owner's associated token account for a mint. No network call."""
        owner_key = _parse_pubkey(owner, "owner address")
        mint_key = _parse_pubkey(mint, "mint address")
        return str(get_associated_token_address(owner_key, mint_key))

    def get_account_balance(self, account: str) -> Decimal:
        """
        Read the confirmed token balance of a token account.

        Raises:
            AccountNotFound: If the account has never been initialized
            LedgerError: If the RPC node cannot be reached
        """
        account_key = _parse_pubkey(account, "token account")

        info = self._with_retries(
            "get_account_info",
            lambda: self.client.get_account_info(account_key, commitment=Confirmed),
        )
        if info.value is None:
            raise AccountNotFound(f"Token account {account} not found")

        resp = self._with_retries(
            "get_token_account_balance",
            lambda: self.client.get_token_account_balance(account_key, commitment=Confirmed),
        )
        return Decimal(resp.value.amount) / (Decimal(10) ** resp.value.decimals)

    def get_transaction(self, signature: str) -> Optional[TransactionRecord]:
        """
        Fetch a transaction by signature with its token-balance snapshots.

        Returns:
            TransactionRecord, or None if the transaction is unknown or not yet
            at the configured commitment level.
        """
        try:
            sig = Signature.from_string(signature.strip())
        except (ValueError, TypeError, AttributeError) as e:
            raise InputValidationError(f"Invalid transaction signature: {signature}", code="InvalidSignature") from e

        commitment = Commitment(settings.SOLANA_VERIFY_COMMITMENT)
        resp = self._with_retries(
            "get_transaction",
            lambda: self.client.get_transaction(
                sig,
                encoding="json",
                commitment=commitment,
                max_supported_transaction_version=0,
            ),
        )
        if resp.value is None:
            return None

        return self._to_record(signature, resp.value)

    def _to_record(self, signature: str, confirmed) -> TransactionRecord:
        encoded = confirmed.transaction
        meta = encoded.meta
        message = encoded.transaction.message

        account_keys = [_account_key_str(k) for k in message.account_keys]
        # v0 transactions append lookup-table addresses after the static keys
        loaded = getattr(meta, "loaded_addresses", None) if meta is not None else None
        if loaded is not None:
            account_keys.extend(str(k) for k in (loaded.writable or []))
            account_keys.extend(str(k) for k in (loaded.readonly or []))

        def snapshots(balances) -> Optional[List[TokenBalanceSnapshot]]:
            if balances is None:
                return None
            result = []
            for bal in balances:
                index = bal.account_index
                result.append(TokenBalanceSnapshot(
                    account=account_keys[index] if 0 <= index < len(account_keys) else None,
                    mint=str(bal.mint),
                    amount=int(bal.ui_token_amount.amount),
                    decimals=bal.ui_token_amount.decimals,
                ))
            return result

        return TransactionRecord(
            signature=signature,
            slot=confirmed.slot,
            block_time=confirmed.block_time,
            err=str(meta.err) if meta is not None and meta.err is not None else None,
            pre_token_balances=snapshots(meta.pre_token_balances) if meta is not None else None,
            post_token_balances=snapshots(meta.post_token_balances) if meta is not None else None,
            account_keys=account_keys,
        )

    def submit_transfer(
        self,
        signer: Keypair,
        to_account: str,
        mint: str,
        amount: Decimal,
        decimals: int,
    ) -> str:
        """
        Transfer `amount` tokens from the signer's token account to `to_account`.

        Waits for "confirmed" commitment before returning the signature.
        Not idempotent: callers must not retry blindly.

        Raises:
            TransferFailed: Recipient account missing, submission rejected,
                or confirmation never arrived
        """
        mint_key = _parse_pubkey(mint, "mint address")
        dest = _parse_pubkey(to_account, "recipient token account")
        source = get_associated_token_address(signer.pubkey(), mint_key)

        units = to_smallest_units(amount, decimals)
        if units <= 0:
            raise TransferFailed(f"Transfer amount {amount} is below one base unit")

        try:
            if self.client.get_account_info(dest, commitment=Confirmed).value is None:
                raise TransferFailed(
                    "Recipient does not have a token account for this mint. "
                    "They need to create one before claiming."
                )

            instruction = transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source,
                    mint=mint_key,
                    dest=dest,
                    owner=signer.pubkey(),
                    amount=units,
                    decimals=decimals,
                )
            )
            blockhash = self.client.get_latest_blockhash(commitment=Confirmed).value.blockhash
            message = Message.new_with_blockhash([instruction], signer.pubkey(), blockhash)
            transaction = Transaction([signer], message, blockhash)

            sent = self.client.send_transaction(
                transaction,
                opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
            )
            tx_sig = sent.value
        except (RPCException, SolanaRpcException) as e:
            logger.error(f"Token transfer submission to {to_account} failed: {e}")
            raise TransferFailed(f"Transfer submission failed: {e}") from e

        signature = str(tx_sig)
        logger.info(f"Submitted transfer of {units} base units to {to_account}: {signature}")

        try:
            status = self.client.confirm_transaction(tx_sig, commitment=Confirmed)
        except (UnconfirmedTxError, RPCException, SolanaRpcException) as e:
            logger.error(f"Transfer {signature} was not confirmed: {e}")
            raise TransferFailed(f"Transfer not confirmed: {e}", details={"signature": signature}) from e

        statuses = status.value or []
        if statuses and statuses[0] is not None and statuses[0].err is not None:
            raise TransferFailed(
                f"Transfer failed on chain: {statuses[0].err}",
                details={"signature": signature},
            )

        return signature

    def get_network_slot(self) -> int:
        """Current slot, used as a liveness probe."""
        return self._with_retries("get_slot", lambda: self.client.get_slot()).value


@lru_cache()
def get_ledger() -> SolanaLedger:
    return SolanaLedger()
