"""Core configuration - centralized config for the sciflow package.

All environment-based configuration should flow through this module.
This provides a single source of truth and consistent defaults.

Usage:
    from sciflow.core.config import get_config
    config = get_config()

    fee = config.platform_fee_percent
    rails = config.enabled_rail_names
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Core configuration settings for SciFlow.

    Settings can be configured via environment variables with the
    SCIFLOW_ prefix. Card processor keys also accept the processor's
    conventional STRIPE_* names.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # SETTLEMENT POLICY
    # ==========================================================================

    platform_fee_percent: Decimal = Field(
        default=Decimal("5"),
        description="Platform fee charged on top of the bounty budget (percent)",
        validation_alias="SCIFLOW_PLATFORM_FEE_PERCENT",
    )
    stake_lock_percent: Decimal = Field(
        default=Decimal("10"),
        description="Share of the accepted bid locked from the lab's stake (percent)",
        validation_alias="SCIFLOW_STAKE_LOCK_PERCENT",
    )
    deposit_tolerance_bps: int = Field(
        default=10,
        description="Shortfall accepted on value-transfer deposits, in basis points of the expected amount",
        validation_alias="SCIFLOW_DEPOSIT_TOLERANCE_BPS",
    )
    deposit_tolerance_cap: Decimal = Field(
        default=Decimal("1.00"),
        description="Absolute cap on the accepted deposit shortfall (USDC)",
        validation_alias="SCIFLOW_DEPOSIT_TOLERANCE_CAP",
    )

    # ==========================================================================
    # RAIL CALL POLICY
    # ==========================================================================

    enabled_rails: str = Field(
        default="card,base_usdc,solana_usdc",
        description="Comma-separated list of rails accepted for funding",
        validation_alias="SCIFLOW_ENABLED_RAILS",
    )
    rail_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for a single outbound rail call",
        validation_alias="SCIFLOW_RAIL_TIMEOUT_SECONDS",
    )
    rail_max_attempts: int = Field(
        default=3,
        description="Attempts per rail call before giving up",
        validation_alias="SCIFLOW_RAIL_MAX_ATTEMPTS",
    )
    rail_backoff_seconds: float = Field(
        default=0.5,
        description="Initial backoff between rail attempts (doubles each retry)",
        validation_alias="SCIFLOW_RAIL_BACKOFF_SECONDS",
    )
    commit_max_attempts: int = Field(
        default=3,
        description="Attempts to commit a ledger transaction on storage errors",
        validation_alias="SCIFLOW_COMMIT_MAX_ATTEMPTS",
    )

    # ==========================================================================
    # CARD RAIL (Stripe PaymentIntents, manual capture)
    # ==========================================================================

    stripe_secret_key: str = Field(
        default="",
        description="Card processor secret API key",
        validation_alias="STRIPE_SECRET_KEY",
    )
    stripe_api_base: str = Field(
        default="https://api.stripe.com/v1",
        description="Card processor API base URL",
        validation_alias="SCIFLOW_STRIPE_API_BASE",
    )
    stripe_webhook_secret: str = Field(
        default="",
        description="Signing secret for inbound card processor webhooks",
        validation_alias="STRIPE_WEBHOOK_SECRET",
    )
    webhook_tolerance_seconds: int = Field(
        default=300,
        description="Maximum age of a signed webhook timestamp",
        validation_alias="SCIFLOW_WEBHOOK_TOLERANCE_SECONDS",
    )

    # ==========================================================================
    # BASE (EVM) USDC RAIL
    # ==========================================================================

    base_rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="Base JSON-RPC endpoint",
        validation_alias="SCIFLOW_BASE_RPC_URL",
    )
    base_usdc_contract: str = Field(
        default="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        description="USDC token contract on Base",
        validation_alias="SCIFLOW_BASE_USDC_CONTRACT",
    )
    base_deposit_address: str = Field(
        default="",
        description="Platform wallet that receives Base USDC deposits",
        validation_alias="SCIFLOW_BASE_DEPOSIT_ADDRESS",
    )
    base_chain_id: int = Field(
        default=8453,
        description="EVM chain id for Base",
        validation_alias="SCIFLOW_BASE_CHAIN_ID",
    )

    # ==========================================================================
    # SOLANA USDC RAIL
    # ==========================================================================

    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC endpoint",
        validation_alias="SCIFLOW_SOLANA_RPC_URL",
    )
    solana_usdc_mint: str = Field(
        default="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        description="USDC SPL token mint",
        validation_alias="SCIFLOW_SOLANA_USDC_MINT",
    )
    solana_deposit_address: str = Field(
        default="",
        description="Platform wallet that receives Solana USDC deposits",
        validation_alias="SCIFLOW_SOLANA_DEPOSIT_ADDRESS",
    )

    # ==========================================================================
    # CUSTODY (outbound on-chain transfers)
    # ==========================================================================

    custody_api_url: str = Field(
        default="",
        description="Custody service that signs and sends outbound USDC transfers",
        validation_alias="SCIFLOW_CUSTODY_API_URL",
    )
    custody_api_key: str = Field(
        default="",
        description="API key for the custody service",
        validation_alias="SCIFLOW_CUSTODY_API_KEY",
    )

    # ==========================================================================
    # STORAGE
    # ==========================================================================

    storage_backend: str = Field(
        default="memory",
        description="Ledger storage backend: 'memory' or 'postgres'",
        validation_alias="SCIFLOW_STORAGE_BACKEND",
    )
    db_host: str = Field(
        default="localhost",
        description="Database host",
        validation_alias="SCIFLOW_DB_HOST",
    )
    db_port: int = Field(
        default=5432,
        description="Database port",
        validation_alias="SCIFLOW_DB_PORT",
    )
    db_name: str = Field(
        default="sciflow",
        description="Database name",
        validation_alias="SCIFLOW_DB_NAME",
    )
    db_user: str = Field(
        default="sciflow",
        description="Database user",
        validation_alias="SCIFLOW_DB_USER",
    )
    db_password: str = Field(
        default="",
        description="Database password",
        validation_alias="SCIFLOW_DB_PASSWORD",
    )
    db_pool_min: int = Field(
        default=2,
        description="Minimum pool connections",
        validation_alias="SCIFLOW_DB_POOL_MIN",
    )
    db_pool_max: int = Field(
        default=10,
        description="Maximum pool connections",
        validation_alias="SCIFLOW_DB_POOL_MAX",
    )

    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis URL for shared rate-limit counters",
        validation_alias="SCIFLOW_REDIS_URL",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="SCIFLOW_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="SCIFLOW_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="SCIFLOW_LOG_FILE",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def enabled_rail_names(self) -> list[str]:
        """Enabled rails as a list, in configuration order."""
        return [name.strip() for name in self.enabled_rails.split(",") if name.strip()]

    @property
    def database_url(self) -> str:
        """Construct database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def connection_params(self) -> dict:
        """Get database connection parameters dict."""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
        }

    @property
    def pool_config(self) -> dict:
        """Get connection pool configuration."""
        return {
            "minconn": self.db_pool_min,
            "maxconn": self.db_pool_max,
        }


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance.

    Returns:
        The singleton CoreSettings instance.
    """
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
