"""Centralized configuration management for the ADAO subscription service.

Loads all configuration from environment variables with sensible defaults.
"""

from decimal import Decimal
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from .models import SubscriptionPlan
from .subscriptions.plans import DEFAULT_PLANS
from .subscriptions.signatures import is_valid_address

# Load environment variables from .env file
load_dotenv()

PLACEHOLDER_RECEIVER_ADDRESS = "0x1234567890123456789012345678901234567890"


class Config(BaseSettings):
    """Main configuration class for the service."""

    # Chain Configuration
    base_rpc_url: str = Field(default="https://mainnet.base.org", description="Base RPC endpoint")
    chain_id: int = Field(default=8453, description="Base mainnet")
    explorer_url: str = Field(default="https://basescan.org")
    native_symbol: str = Field(default="ETH")
    min_gas_balance: str = Field(
        default="0.0001", description="Minimum native balance required to pay for gas"
    )
    confirmation_timeout_seconds: float = Field(
        default=120.0, description="Maximum wait for a transfer to be mined"
    )

    # Payment Token
    adao_token_address: str = Field(
        default="0x1ef7Be0aBff7d1490e952eC1C7476443A66d6b72",
        description="ADAO ERC-20 contract on Base",
    )
    adao_token_decimals: int = Field(default=18)
    adao_token_symbol: str = Field(default="ADAO")

    # Treasury
    receiver_wallet_address: str = Field(default="", description="Default payment receiver")

    # Settlement
    payment_mode: Literal["simulated", "onchain"] = Field(default="simulated")
    signer_private_key: str = Field(
        default="", description="Key used to sign transfers in onchain mode"
    )

    # Service URLs and Ports
    app_url: str = Field(default="http://localhost:3000")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Webhooks
    webhook_secret: str = Field(default="", description="Shared secret for HMAC webhook signatures")
    webhook_notifications_enabled: bool = Field(default=False)

    # Database
    database_path: str = Field(default="./subscriptions.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def webhook_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/webhooks/subscription"

    @property
    def redirect_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/success"


class PaymentSettings(BaseModel):
    """Immutable settings handed to the payment processor."""

    model_config = ConfigDict(frozen=True)

    chain_id: int
    token_address: str
    token_decimals: int
    token_symbol: str
    native_symbol: str
    min_gas_balance: Decimal
    default_receiver: str
    confirmation_timeout_seconds: float
    plans: dict[str, SubscriptionPlan] = Field(default_factory=lambda: dict(DEFAULT_PLANS))


# Global config instance
config = Config()


def build_payment_settings(cfg: Config = None) -> PaymentSettings:
    """Derive processor settings from the environment-backed config.

    Args:
        cfg: Config to read from. Defaults to the global config.

    Returns:
        Frozen PaymentSettings.
    """
    cfg = cfg or config
    return PaymentSettings(
        chain_id=cfg.chain_id,
        token_address=cfg.adao_token_address,
        token_decimals=cfg.adao_token_decimals,
        token_symbol=cfg.adao_token_symbol,
        native_symbol=cfg.native_symbol,
        min_gas_balance=Decimal(cfg.min_gas_balance),
        default_receiver=cfg.receiver_wallet_address or PLACEHOLDER_RECEIVER_ADDRESS,
        confirmation_timeout_seconds=cfg.confirmation_timeout_seconds,
    )


def validate_config(cfg: Config = None) -> None:
    """Validate that the configuration is usable.

    Args:
        cfg: Config to validate. Defaults to the global config.

    Raises:
        ValueError: If the configuration is inconsistent.
    """
    cfg = cfg or config
    errors = []

    if not is_valid_address(cfg.adao_token_address):
        errors.append(f"ADAO_TOKEN_ADDRESS is not a valid address: {cfg.adao_token_address}")
    if cfg.receiver_wallet_address and not is_valid_address(cfg.receiver_wallet_address):
        errors.append(
            f"RECEIVER_WALLET_ADDRESS is not a valid address: {cfg.receiver_wallet_address}"
        )
    if cfg.adao_token_decimals < 0:
        errors.append("ADAO_TOKEN_DECIMALS must not be negative")

    try:
        if Decimal(cfg.min_gas_balance) < 0:
            errors.append("MIN_GAS_BALANCE must not be negative")
    except ArithmeticError:
        errors.append(f"MIN_GAS_BALANCE is not a number: {cfg.min_gas_balance}")

    if cfg.payment_mode == "onchain" and not cfg.signer_private_key:
        errors.append("SIGNER_PRIVATE_KEY must be set when PAYMENT_MODE=onchain")

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
