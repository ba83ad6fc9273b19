"""
MarketPay Configuration Module

Loads environment variables for the payment reconciliation backend.
"""
from pydantic_settings import BaseSettings
from typing import Literal, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - The webhook secret must match the one configured on the gateway side
    - Demo mode makes the mock gateway approve every transaction
    - pending_intent_ttl_minutes=None keeps pending intents forever
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_path: str = "./marketpay.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    app_base_url: str = "http://localhost:3000"

    # Transaction references
    order_tx_ref_prefix: str = "AC"
    subscription_tx_ref_prefix: str = "AC-SUB"

    # Payment gateway
    gateway_checkout_base_url: str = "https://checkout.gateway.local/pay"
    webhook_secret: str = "webhook_secret_demo_only_change_me"
    webhook_max_age_seconds: int = 300

    # Idempotency cache on checkout initiation
    idempotency_pending_ttl_minutes: int = 30
    idempotency_completed_ttl_hours: int = 24

    # Maintenance
    webhook_retention_days: int = 30
    webhook_cleanup_batch_size: int = 500
    pending_intent_ttl_minutes: Optional[int] = None
    janitor_enabled: bool = True
    janitor_interval_minutes: int = 60

    # Refund policy
    allow_multiple_partial_refunds: bool = False

    # Seller payouts
    payout_platform_fee_rate: float = 0.01
    payout_webhook_secret: str = "payout_webhook_secret_demo_only_change_me"
    payout_approval_secret: str = "payout_approval_secret_demo_only_change_me"
    payout_retry_interval_minutes: int = 15

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_path}"


# Global settings instance
settings = Settings()
