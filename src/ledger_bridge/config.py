"""
Configuration for the ledger bridge.

Settings are read from the environment (and an optional .env file).
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .types import LedgerConfigurationError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LedgerSettings(BaseSettings):
    """Ledger bridge configuration"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field("development", description="development, test or production")

    # Feature flag: when false no ledger I/O happens anywhere
    blockchain_enabled: bool = True

    # Node
    rpc_url: Optional[str] = Field(None, validation_alias="LISK_RPC_URL")
    public_rpc_url: str = "https://rpc.sepolia-api.lisk.com"
    expected_chain_id: int = 4202
    private_key: Optional[str] = Field(None, validation_alias="LISK_PRIVATE_KEY")

    # Contracts
    script_nft_address: Optional[str] = None
    project_registry_address: Optional[str] = None
    escrow_manager_address: Optional[str] = None

    # Monitoring
    confirmation_threshold: Optional[int] = None
    drop_after_missing_polls: int = 12

    # Gas
    gas_cache_ttl: float = 30.0

    # Reconnection
    max_reconnect_attempts: int = 3
    reconnect_cooldown: float = 30.0
    receipt_timeout: float = 120.0

    # Mirror store
    database_url: str = "sqlite:///./ledger_bridge.db"

    log_level: str = "INFO"

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def settlement_threshold(self) -> int:
        """Confirmations needed before a transaction counts as settled"""
        if self.confirmation_threshold is not None:
            return max(1, self.confirmation_threshold)
        return 3 if self.is_production else 1

    def resolve_rpc_url(self) -> str:
        """Configured endpoint, or the public one outside production"""
        if self.rpc_url:
            return self.rpc_url
        if self.is_production:
            raise LedgerConfigurationError(
                "LISK_RPC_URL must be set in production",
                error_code="MISSING_RPC_URL"
            )
        logger.warning(f"LISK_RPC_URL not set, falling back to public endpoint {self.public_rpc_url}")
        return self.public_rpc_url


@lru_cache()
def get_settings() -> LedgerSettings:
    return LedgerSettings()


def configure_logging(level: Optional[str] = None):
    """Basic logging setup for the service entry point"""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format=LOG_FORMAT,
    )
