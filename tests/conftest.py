# tests/conftest.py
"""
Shared fixtures.

Nothing here talks to the network: the ledger, metadata store and
upstream APIs are replaced with mocks, storage is in-memory, and the
audit log is written to a temporary directory.
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from solders.keypair import Keypair

from app.core.config import settings
from app.api.models.listing import ApiMetadata
from app.services.storage import InMemoryStorage

DEVNET_USDC_MINT = "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr"

# Fixed seeds so the wallets are stable across imports
OPERATOR_KEYPAIR = Keypair.from_seed(bytes([1] * 32))
OPERATOR_WALLET = str(OPERATOR_KEYPAIR.pubkey())
PROVIDER_WALLET = str(Keypair.from_seed(bytes([2] * 32)).pubkey())


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the audit log at a temp dir and pin payment settings."""
    monkeypatch.setattr(settings, "AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr(settings, "SOLANA_CLUSTER", "devnet")
    monkeypatch.setattr(settings, "SOLANA_USDC_MINT", None)
    monkeypatch.setattr(settings, "SOLANA_PAYMENT_WALLET", OPERATOR_WALLET)
    monkeypatch.setattr(settings, "SOLANA_PRIVATE_KEY", str(OPERATOR_KEYPAIR))
    monkeypatch.setattr(settings, "PAYMENT_MAX_AGE_SECONDS", 300)
    monkeypatch.setattr(settings, "PAYMENT_AMOUNT_TOLERANCE", 0.000001)
    monkeypatch.setattr(settings, "AUDIT_API_KEY", None)
    return settings


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def metadata():
    return ApiMetadata(
        endpoint="https://up.example/run",
        costPerRequest=Decimal("0.5"),
        name="Runner",
        id="fluxapi-1-abc123",
    )


@pytest.fixture
def mock_ledger():
    """Ledger with a funded operator account and a fixed recipient token account."""
    ledger = MagicMock()
    ledger.resolve_token_account.side_effect = lambda owner, mint: f"ata:{owner}"
    ledger.get_account_balance.return_value = Decimal("1000")
    ledger.submit_transfer.return_value = "5xPayoutSignature"
    return ledger
