"""Application configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings

from elements_adapter import ElementsRPCSettings, EsploraSettings

# Unspendable NUMS point used as taproot internal key for Simplicity leaves
DEFAULT_INTERNAL_KEY = "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./covenant_custody.db"
    database_url_sync: Optional[str] = None

    @model_validator(mode='after')
    def process_database_urls(self):
        """Derive the sync URL used by alembic from the async one."""
        self.database_url = self.database_url.strip()
        if self.database_url_sync:
            self.database_url_sync = self.database_url_sync.strip()

        if self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

        if not self.database_url_sync:
            self.database_url_sync = (
                self.database_url.replace("+asyncpg", "").replace("+aiosqlite", "")
            )
        return self

    # Environment
    environment: str = "development"

    # Chain: liquidtestnet, liquid or elementsregtest
    network: str = "liquidtestnet"

    # Elements node RPC
    elements_rpc_host: str = "localhost"
    elements_rpc_port: int = 18891
    elements_rpc_user: str = "user"
    elements_rpc_password: str = "password"
    elements_rpc_wallet: Optional[str] = None
    elements_rpc_timeout_seconds: float = 30.0

    # Esplora fallback (lookup + broadcast)
    esplora_base_url: str = "https://blockstream.info/liquidtestnet/api"
    esplora_enabled: bool = True

    # Testnet faucet
    faucet_url: str = "https://liquidtestnet.com/faucet"

    # Covenant toolchain
    hal_path: str = "hal-simplicity"
    simc_path: str = "simc"
    engine_timeout_seconds: float = 60.0
    internal_key: str = DEFAULT_INTERNAL_KEY

    # Spend policy
    min_fee_sats: int = 100

    # Confirmation polling
    poll_max_attempts: int = 20
    poll_interval_seconds: float = 5.0
    funding_min_confirmations: int = 0  # Elements accepts spends of mempool outputs
    spend_min_confirmations: int = 1

    def elements_rpc_settings(self) -> ElementsRPCSettings:
        return ElementsRPCSettings(
            host=self.elements_rpc_host,
            port=self.elements_rpc_port,
            user=self.elements_rpc_user,
            password=self.elements_rpc_password,
            wallet=self.elements_rpc_wallet,
            timeout_seconds=self.elements_rpc_timeout_seconds,
        )

    def esplora_settings(self) -> EsploraSettings:
        return EsploraSettings(base_url=self.esplora_base_url)

    class Config:
        env_file = ".env"
        extra = "ignore"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    import logging
    logger = logging.getLogger(__name__)

    settings = Settings()

    rpc_target = f"{settings.elements_rpc_host}:{settings.elements_rpc_port}"
    logger.info(f"Settings loaded - network: {settings.network}, elements rpc: {rpc_target}")

    return settings
