# x402gate/core/config.py
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings

# Load .env file if it exists
load_dotenv()

# Solana mainnet USDC mint
USDC_MINT_MAINNET = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Solana Payment Gateway"
    API_V1_STR: str = "/api/v1"

    # Ledger RPC
    SOLANA_RPC_URL: AnyHttpUrl = "https://api.mainnet-beta.solana.com"
    SOLANA_COMMITMENT: str = "confirmed"
    SOLANA_RPC_TIMEOUT: float = 10.0

    # x402 merchant settings
    X402_ENABLED: bool = True
    X402_NETWORK: str = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"
    X402_ASSET: str = USDC_MINT_MAINNET
    X402_ASSET_DECIMALS: int = 6
    X402_PAY_TO_ADDRESS: Optional[str] = None
    X402_FACILITATOR_URL: str = "https://facilitator.payai.network"
    X402_FEE_PAYER: Optional[str] = None  # discovered from the facilitator when unset
    X402_MAX_TIMEOUT_SECONDS: int = 300

    # Protected routes, "METHOD /path/prefix" entries
    X402_PROTECTED_ROUTES: List[str] = []
    X402_DEFAULT_PRICE_USD: float = 0.01

    # Safety bounds
    X402_SAFETY_CEILING: int = 100_000  # atomic units ($0.10 USDC)
    X402_AMOUNT_TOLERANCE: float = 0.01
    X402_COMPUTE_UNIT_LIMIT: int = 8_000
    X402_COMPUTE_UNIT_PRICE: int = 1  # micro-lamports per compute unit

    # Facilitator / ledger timeouts
    X402_FACILITATOR_TIMEOUT: float = 30.0
    X402_FACILITATOR_MAX_ATTEMPTS: int = 3
    X402_DISCOVERY_TIMEOUT: float = 5.0
    X402_FINALITY_MAX_ATTEMPTS: int = 6
    X402_FINALITY_BACKOFF_SECONDS: float = 0.5

    # Persistence
    X402_REPLAY_DSN: str = "sqlite:///./data/x402_replay.db"
    X402_AUDIT_LOG_PATH: str = "./logs/x402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env


@lru_cache()  # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
