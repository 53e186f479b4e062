from functools import lru_cache
import json
from typing import Optional

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors_origins(value: str) -> list[str]:
    if not value:
        return []

    parsed: list[str]
    raw = value.strip()
    if raw.startswith("["):
        try:
            items = json.loads(raw)
            parsed = [str(item).strip() for item in items if str(item).strip()]
        except (TypeError, ValueError):
            parsed = []
    else:
        parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]

    # Preserve order and remove duplicates.
    return list(dict.fromkeys(parsed))


class Settings(BaseSettings):
    app_name: str = "Data Relay"
    environment: str = "development"
    api_prefix: str = "/api"

    # Logging
    log_level: str = "INFO"
    log_format: str = "plain"  # plain|json

    # Paystack (payment gateway)
    paystack_secret_key: str
    paystack_webhook_secret: Optional[str] = None
    paystack_base_url: AnyHttpUrl = "https://api.paystack.co"
    paystack_currency: str = "GHS"
    paystack_timeout_seconds: float = 15
    paystack_retry_count: int = 3

    # Hubnet (data bundle fulfillment)
    hubnet_api_key: str
    hubnet_base_url: AnyHttpUrl = "https://console.hubnet.app/live/api/context/business/transaction"
    hubnet_timeout_seconds: float = 45
    hubnet_retry_count: int = 2
    # Purchases are single-attempt unless explicitly raised; the provider is
    # keyed on our reference but a retried POST is still a second debit request.
    hubnet_purchase_retry_count: int = 0
    hubnet_balance_path: str = "/check_balance"
    hubnet_balance_check: bool = True
    hubnet_test_mode: bool = False

    # Public URLs
    public_base_url: Optional[str] = None
    frontend_base_url: str = "http://localhost:5173"

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Ops: key required by the manual retry endpoint (X-Admin-Key header).
    admin_api_key: Optional[str] = None

    # Transaction store
    store_path: str = "data/transactions.json"
    store_flush_interval_seconds: float = 5
    store_retention_hours: float = 72
    store_cleanup_interval_seconds: float = 3600

    # Resilience
    breaker_failure_threshold: int = 5
    breaker_recovery_seconds: float = 30
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8

    # Purchases
    max_purchase_amount: float = 1000
    initiate_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("store_flush_interval_seconds")
    @classmethod
    def _bounded_flush_interval(cls, value: float) -> float:
        if value <= 0 or value > 30:
            raise ValueError("store_flush_interval_seconds must be within (0, 30]")
        return value

    @field_validator("store_retention_hours")
    @classmethod
    def _minimum_retention(cls, value: float) -> float:
        if value < 24:
            raise ValueError("store_retention_hours must be at least 24")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
