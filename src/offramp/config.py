"""Application configuration using pydantic-settings.

All chain, aggregator and payout gateway settings for the off-ramp service
are loaded from the environment (or a .env file).
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/offramp.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(
        default=True, description="Use the dry-run payout gateway instead of Paystack"
    )

    # ======================
    # Admin
    # ======================
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # HD Wallet / Treasury
    # ======================
    offramp_master_mnemonic: Optional[str] = Field(
        default=None, description="BIP39 mnemonic for custodial wallet derivation"
    )
    treasury_private_key: Optional[str] = Field(
        default=None,
        description="Treasury (gas master) private key; defaults to mnemonic index 0",
    )
    receiver_wallet_address: Optional[str] = Field(
        default=None,
        description="Wallet that receives consolidated USDC; defaults to treasury",
    )
    master_key: Optional[str] = Field(
        default=None, description="Fernet key for encrypting stored derivation identifiers"
    )

    # ======================
    # Chain
    # ======================
    base_rpc_url: str = Field(default="https://mainnet.base.org", description="Base RPC URL")
    base_chain_id: int = Field(default=8453, description="Base chain ID")
    confirmation_timeout: int = Field(
        default=120, description="Seconds to wait for a transaction receipt"
    )
    confirmation_poll_interval: float = Field(
        default=2.0, description="Seconds between receipt polls"
    )

    # ======================
    # Gas
    # ======================
    gas_top_up_eth: Decimal = Field(
        default=Decimal("0.0002"), description="ETH sent to a custodial wallet when short on gas"
    )
    treasury_reserve_eth: Decimal = Field(
        default=Decimal("0.00002"), description="ETH the treasury never spends"
    )
    gas_recovery_reserve_eth: Decimal = Field(
        default=Decimal("0.00001"), description="ETH left behind after gas recovery"
    )
    estimated_swap_gas_eth: Decimal = Field(
        default=Decimal("0.00015"), description="Estimated ETH cost of approve + swap + transfer"
    )

    # ======================
    # Swap Aggregator (0x)
    # ======================
    zerox_api_url: str = Field(
        default="https://api.0x.org/swap/allowance-holder", description="0x Swap API base URL"
    )
    zerox_api_key: str = Field(default="", description="0x API key")
    swap_slippage_percent: Decimal = Field(
        default=Decimal("1"), description="Slippage tolerance in percent"
    )
    dust_threshold: Decimal = Field(
        default=Decimal("0.01"), description="Token amounts (human units) below this are not swapped"
    )
    settlement_tolerance_percent: Decimal = Field(
        default=Decimal("1"), description="Allowed shortfall when verifying settlement"
    )

    # ======================
    # Retries
    # ======================
    retry_max_attempts: int = Field(default=3, description="Attempts for gas, swap and payout")
    retry_base_delay: float = Field(default=1.0, description="First backoff delay in seconds")

    # ======================
    # Scheduled processing
    # ======================
    process_interval_seconds: float = Field(
        default=60.0, description="Seconds between sweeps of in-flight transactions; 0 disables"
    )
    process_batch_size: int = Field(default=100, description="Transactions advanced per sweep")

    # ======================
    # Payout Gateway (Paystack)
    # ======================
    paystack_api_url: str = Field(
        default="https://api.paystack.co", description="Paystack API base URL"
    )
    paystack_secret_key: str = Field(default="", description="Paystack secret key")
    deposit_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for deposit webhooks"
    )

    # ======================
    # Off-ramp Defaults
    # ======================
    offramp_exchange_rate: Decimal = Field(
        default=Decimal("1650"), description="NGN per 1 USDC"
    )
    offramp_enabled: bool = Field(default=True, description="Accept new off-ramp transactions")
    offramp_minimum_ngn: Decimal = Field(default=Decimal("500"), description="Minimum payout")
    offramp_maximum_ngn: Decimal = Field(
        default=Decimal("5000000"), description="Maximum payout"
    )
    settings_cache_seconds: int = Field(
        default=300, description="Cache lifetime for database-backed settings"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_wallet(self) -> bool:
        """Check if the master mnemonic is configured."""
        return bool(
            self.offramp_master_mnemonic and len(self.offramp_master_mnemonic.split()) >= 12
        )

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "wallet_configured": self.has_wallet,
            "treasury_key": "***" if self.treasury_private_key else "(mnemonic index 0)",
            "receiver_wallet": self.receiver_wallet_address or "(treasury)",
            "chain": {
                "rpc": self.base_rpc_url,
                "chain_id": self.base_chain_id,
            },
            "aggregator": {
                "url": self.zerox_api_url,
                "api_key": "***" if self.zerox_api_key else "(not set)",
                "slippage_percent": str(self.swap_slippage_percent),
            },
            "payout": {
                "url": self.paystack_api_url,
                "secret_key": "***" if self.paystack_secret_key else "(not set)",
            },
            "offramp": {
                "exchange_rate": str(self.offramp_exchange_rate),
                "enabled": self.offramp_enabled,
                "minimum_ngn": str(self.offramp_minimum_ngn),
                "maximum_ngn": str(self.offramp_maximum_ngn),
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
