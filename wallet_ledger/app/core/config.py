from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Wallet Ledger API"
    database_url: str = "sqlite:///wallet_ledger.db"
    log_level: str = "INFO"

    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Failed-login lockout
    login_max_attempts: int = 5
    login_lockout_seconds: int = 60

    # Request-rate limiting per client IP
    abuse_protection_enabled: bool = True
    ddos_window_seconds: int = 60
    ddos_max_requests: int = 100
    ddos_block_seconds: int = 60
    ddos_window_retention_seconds: int = 15 * 60
    ddos_check_attempts_threshold: int = 10

    verification_code_ttl_seconds: int = 10 * 60
    verification_code_length: int = 6
    sweep_interval_seconds: int = 60

    auto_reject_unfunded_requests: bool = True

    currency: str = "USD"
    payment_timeout_seconds: float = 10.0
    payout_reconcile_after_seconds: int = 5 * 60
    stripe_api_key: Optional[str] = None
    stripe_base_url: str = "https://api.stripe.com"
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"

    smtp_host: Optional[str] = None
    smtp_port: int = 465
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "no-reply@wallet-ledger.local"
    smtp_use_ssl: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="WALLET_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
