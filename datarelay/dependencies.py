import hmac
from datetime import timedelta
from functools import lru_cache

from fastapi import Header, HTTPException

from datarelay.core.config import get_settings
from datarelay.core.store import TransactionStore
from datarelay.services.circuit_breaker import CircuitBreaker
from datarelay.services.hubnet import HubnetClient
from datarelay.services.paystack import PaystackClient
from datarelay.services.reconciliation import ReconciliationService
from datarelay.services.remote import BREAKER_NEUTRAL_ERRORS, RemoteCaller


settings = get_settings()


@lru_cache
def get_store() -> TransactionStore:
    return TransactionStore(
        settings.store_path,
        flush_interval=settings.store_flush_interval_seconds,
        retention=timedelta(hours=settings.store_retention_hours),
        cleanup_interval=settings.store_cleanup_interval_seconds,
    )


@lru_cache
def get_breakers() -> dict[str, CircuitBreaker]:
    return {
        name: CircuitBreaker(
            name,
            failure_threshold=settings.breaker_failure_threshold,
            recovery_timeout=settings.breaker_recovery_seconds,
            ignored_exceptions=BREAKER_NEUTRAL_ERRORS,
        )
        for name in ("paystack", "hubnet")
    }


@lru_cache
def get_remote_caller() -> RemoteCaller:
    return RemoteCaller(
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
    )


@lru_cache
def get_paystack_client() -> PaystackClient:
    return PaystackClient(get_remote_caller(), get_breakers()["paystack"])


@lru_cache
def get_hubnet_client() -> HubnetClient:
    return HubnetClient(get_remote_caller(), get_breakers()["hubnet"])


def fulfillment_webhook_url() -> str | None:
    base = str(settings.public_base_url or "").strip().rstrip("/")
    if not base:
        return None
    return f"{base}{settings.api_prefix}/webhook"


@lru_cache
def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService(
        get_store(),
        get_paystack_client(),
        get_hubnet_client(),
        fulfillment_webhook_url=fulfillment_webhook_url(),
        referrer=settings.frontend_base_url or None,
    )


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    expected = settings.admin_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="Manual retry is disabled: ADMIN_API_KEY is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")
