"""Configuration settings for the Elements adapter."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ElementsRPCSettings(BaseSettings):
    """Elements node JSON-RPC configuration.

    All settings can be configured via environment variables with ELEMENTS_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="ELEMENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = Field(
        default="localhost",
        description="Elements node RPC host",
    )
    port: int = Field(
        default=18891,
        description="Elements node RPC port (18891 for liquidtestnet)",
    )
    user: str = Field(
        default="user",
        description="RPC username",
    )
    password: str = Field(
        default="password",
        description="RPC password",
    )
    wallet: str | None = Field(
        default=None,
        description="Wallet name for wallet-scoped calls",
    )
    timeout_seconds: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )
    retry_attempts: int = Field(
        default=3,
        description="Number of retry attempts for failed requests",
    )
    retry_min_wait_seconds: float = Field(
        default=1.0,
        description="Minimum wait time between retries in seconds",
    )
    retry_max_wait_seconds: float = Field(
        default=10.0,
        description="Maximum wait time between retries in seconds",
    )

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class EsploraSettings(BaseSettings):
    """Esplora REST API configuration.

    All settings can be configured via environment variables with ESPLORA_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="ESPLORA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = Field(
        default="https://blockstream.info/liquidtestnet/api",
        description="Esplora API base URL",
    )
    timeout_seconds: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )
    retry_attempts: int = Field(
        default=3,
        description="Number of retry attempts for failed requests",
    )
    retry_min_wait_seconds: float = Field(
        default=1.0,
        description="Minimum wait time between retries in seconds",
    )
    retry_max_wait_seconds: float = Field(
        default=10.0,
        description="Maximum wait time between retries in seconds",
    )
