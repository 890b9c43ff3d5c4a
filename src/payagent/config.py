"""Centralized configuration management for PayAgent.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the PayAgent service."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # RPC endpoints (resolved per network by the chain registry)
    sepolia_rpc_url: str = Field(default="", description="Sepolia JSON-RPC endpoint")
    eth_rpc_url: str = Field(default="", description="Fallback Sepolia endpoint")
    eth_mainnet_rpc_url: str = Field(default="", description="Ethereum mainnet endpoint")
    base_mainnet_rpc_url: str = Field(default="", description="Base mainnet endpoint")
    rpc_timeout_seconds: float = Field(default=15.0)

    # Payment requests
    payment_request_ttl_seconds: int = Field(
        default=7 * 24 * 3600, ge=0, description="Default request lifetime; 0 disables expiry"
    )

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4020)

    # Secret encryption at rest (64 hex chars = 32 bytes)
    secret_encryption_key: str = Field(default="", description="AES-256-GCM key, hex encoded")

    # Request signing
    signature_window_seconds: int = Field(default=300, description="Replay window for signed requests")
    api_key_expiry_days: int = Field(default=10)
    credential_rotation_grace_seconds: int = Field(default=3600)

    # Price oracle
    price_api_url: str = Field(default="https://api.coingecko.com/api/v3/simple/price")
    price_cache_ttl_seconds: int = Field(default=300)
    price_timeout_seconds: float = Field(default=10.0)

    # Fee defaults (used until a fee_config row exists)
    incentive_token: str = Field(default="LCX", description="Flat-fee token symbol")
    flat_fee_amount: str = Field(default="4")
    flat_fee_platform_share: str = Field(default="2")
    flat_fee_creator_reward: str = Field(default="2")
    treasury_wallet: str = Field(default="0x0000000000000000000000000000000000000000")
    fee_config_cache_ttl_seconds: int = Field(default=60)

    # Webhook delivery
    webhook_timeout_seconds: float = Field(default=15.0)
    webhook_retry_delays: list[float] = Field(default=[30.0, 300.0, 1800.0])
    webhook_max_failures: int = Field(default=5)
    webhook_allow_private_urls: bool = Field(
        default=False, description="Skip SSRF checks (local development only)"
    )

    # Database
    database_path: str = Field(default="./payagent.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["api", "cli"]) -> None:
    """Validate that required configuration is present for a service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    key = config.secret_encryption_key
    if len(key) != 64:
        errors.append("SECRET_ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
    else:
        try:
            bytes.fromhex(key)
        except ValueError:
            errors.append("SECRET_ENCRYPTION_KEY is not valid hex")

    if service == "api":
        if not (config.sepolia_rpc_url or config.eth_rpc_url or config.eth_mainnet_rpc_url):
            errors.append("At least one of SEPOLIA_RPC_URL, ETH_RPC_URL or ETH_MAINNET_RPC_URL must be set")

    if len(config.webhook_retry_delays) > 10:
        errors.append("WEBHOOK_RETRY_DELAYS allows at most 10 retries")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
