"""Centralized configuration management for the SatsFlow settlement core.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the settlement core."""

    model_config = {"env_file": ".env", "case_sensitive": False, "extra": "ignore"}

    # Ledger
    database_path: str = Field(default="./satsflow.db")

    # Balance cache
    redis_url: str = Field(default="redis://localhost:6379/0")
    balance_cache_ttl_seconds: int = Field(default=300, description="Balance snapshot TTL")

    # Blockchain gateway (Blockbook-compatible REST API)
    gateway_url: str = Field(default="https://bchbook.example.org/api/v2")
    gateway_api_token: str = Field(default="", description="Optional API token for the gateway")
    gateway_timeout_seconds: float = Field(default=15.0)
    gateway_max_retries: int = Field(default=3)

    # Shareable payment links
    frontend_url: str = Field(default="http://localhost:3000")

    # Confirmation tracking
    min_confirmations: int = Field(default=3)
    confirmation_check_interval_seconds: float = Field(default=30.0)
    confirmation_max_checks: int = Field(default=20)
    max_pending_payments: int = Field(default=10_000)

    # Micropayment policy (satoshis)
    dust_limit_sats: int = Field(default=546, description="Minimum settleable output")
    micropayment_max_sats: int = Field(default=100_000)
    batch_threshold_sats: int = Field(default=10_000)
    batch_size: int = Field(default=10)
    min_fee_per_byte: float = Field(default=1.0)
    recommended_fee_per_byte: float = Field(default=1.0)
    fast_fee_per_byte: float = Field(default=1.5)

    # Withdrawals
    default_fee_basis_points: int = Field(default=100, description="1% service fee")
    network_fee_sats: int = Field(default=250, description="Network fee estimate per withdrawal")

    # Webhooks
    webhook_timeout_seconds: float = Field(default=10.0)
    webhook_failure_threshold: int = Field(default=10)

    # Optional static fiat price; None disables USD estimates
    bch_usd_price: Optional[float] = Field(default=None)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["settlement", "tracker"]) -> None:
    """Validate that required configuration is present for a specific process.

    Args:
        service: The process name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing or inconsistent.
    """
    errors = []

    if not config.database_path:
        errors.append("DATABASE_PATH must be set")

    if not config.gateway_url:
        errors.append("GATEWAY_URL must be set")

    if config.batch_threshold_sats > config.micropayment_max_sats:
        errors.append("BATCH_THRESHOLD_SATS must not exceed MICROPAYMENT_MAX_SATS")

    if not 0 <= config.default_fee_basis_points <= 10_000:
        errors.append("DEFAULT_FEE_BASIS_POINTS must be between 0 and 10000")

    if service == "tracker":
        if config.confirmation_check_interval_seconds <= 0:
            errors.append("CONFIRMATION_CHECK_INTERVAL_SECONDS must be positive")
        if config.min_confirmations < 1:
            errors.append("MIN_CONFIRMATIONS must be at least 1")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
