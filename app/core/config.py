# app/core/config.py
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from typing import Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

# USDC mint addresses by cluster
USDC_MINTS = {
    "devnet": "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr",
    "testnet": "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr",
    "mainnet-beta": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
}


class Settings(BaseSettings):
    PROJECT_NAME: str = "FluxAPI Gateway"
    API_V1_STR: str = "/api/v1"

    # Solana ledger
    SOLANA_RPC_URL: AnyHttpUrl = "https://api.devnet.solana.com"
    SOLANA_CLUSTER: str = "devnet"
    SOLANA_USDC_MINT: Optional[str] = None  # Overrides the per-cluster default
    SOLANA_TOKEN_DECIMALS: int = 6
    SOLANA_PAYMENT_WALLET: Optional[str] = None  # Operator wallet that receives call payments
    SOLANA_PRIVATE_KEY: Optional[str] = None  # Payout signer, base58 or JSON byte array
    SOLANA_VERIFY_COMMITMENT: str = "confirmed"
    SOLANA_RPC_TIMEOUT_SECONDS: float = 30.0

    # Payment verification
    PAYMENT_MAX_AGE_SECONDS: int = 300  # 5 minutes
    PAYMENT_AMOUNT_TOLERANCE: float = 0.000001
    PAYMENT_TOKEN_SYMBOL: str = "USDC"

    # Content-addressed metadata store
    IPFS_GATEWAY_URL: AnyHttpUrl = "https://gateway.pinata.cloud/ipfs/"
    IPFS_TIMEOUT_SECONDS: float = 10.0

    # Listings / usage datastore
    STORAGE_BACKEND: str = "memory"  # "memory" or "mongodb"
    MONGODB_ENDPOINT: Optional[str] = None
    MONGODB_API_KEY: Optional[str] = None
    MONGODB_DATABASE_NAME: str = "fluxapi"
    MONGODB_DATA_SOURCE: str = "Cluster0"
    MONGODB_TIMEOUT_SECONDS: float = 10.0

    # Upstream proxying
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0
    ACCESS_KEY_SECRET: str = "fluxapi-dev-secret"

    # Audit trail
    AUDIT_LOG_PATH: str = "logs/payments_audit.jsonl"
    AUDIT_API_KEY: Optional[str] = None  # Unset disables the /audit routes
    API_KEY_NAME: str = "X-API-Key"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def usdc_mint(self) -> str:
        """Settlement token mint for the configured cluster."""
        if self.SOLANA_USDC_MINT:
            return self.SOLANA_USDC_MINT
        return USDC_MINTS.get(self.SOLANA_CLUSTER, USDC_MINTS["devnet"])


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
