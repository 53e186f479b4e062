import hashlib
import hmac
import logging
from urllib.parse import quote

from datarelay.core.config import get_settings
from datarelay.models.outcomes import PaymentInitialization, PaymentState, PaymentVerification
from datarelay.models.transaction import PurchaseIntent
from datarelay.services.circuit_breaker import CircuitBreaker
from datarelay.services.remote import CircuitOpenError, ClientRejected, RemoteCallError, RemoteCaller, RemoteRequest


settings = get_settings()
logger = logging.getLogger(__name__)


_SUCCESS_STATUS = {"success", "successful", "paid"}
_FAILURE_STATUS = {"failed", "reversed", "cancelled", "canceled", "declined"}
# "abandoned" only means the customer has not finished checkout yet.
_PENDING_STATUS = {"pending", "ongoing", "processing", "queued", "abandoned"}


def classify_payment_status(value) -> PaymentState:
    status = str(value or "").strip().lower()
    if status in _SUCCESS_STATUS:
        return PaymentState.SUCCESS
    if status in _FAILURE_STATUS:
        return PaymentState.FAILED
    return PaymentState.PENDING


def verify_paystack_signature(body: bytes, signature: str) -> bool:
    secret = settings.paystack_webhook_secret or settings.paystack_secret_key
    computed = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(computed, signature or "")


class PaystackClient:
    def __init__(self, caller: RemoteCaller, breaker: CircuitBreaker | None = None):
        self.caller = caller
        self.breaker = breaker
        self.base_url = str(settings.paystack_base_url).rstrip("/")
        self.secret_key = settings.paystack_secret_key
        self.timeout = settings.paystack_timeout_seconds
        self.retry_count = settings.paystack_retry_count

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        return self.caller.call(
            RemoteRequest(
                method=method,
                url=f"{self.base_url}{path}",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
                max_retries=self.retry_count,
                breaker=self.breaker,
                label="paystack",
            )
        )

    def initialize(self, intent: PurchaseIntent, reference: str, callback_url: str) -> PaymentInitialization:
        """Start a hosted checkout. Raises RemoteCallError when the gateway does not accept it."""
        payload = {
            "email": intent.purchaser_email,
            "amount": intent.amount_minor,
            "currency": intent.currency,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": {
                "network": intent.network,
                "phone": intent.target_contact,
                "volume": intent.volume_mb,
                "product_code": intent.product_code,
            },
        }
        response = self._request("POST", "/transaction/initialize", payload)
        data = response.get("data") or {}
        authorization_url = data.get("authorization_url") if isinstance(data, dict) else None
        if not response.get("status") or not authorization_url:
            raise ClientRejected(
                str(response.get("message") or "Payment gateway rejected the request"),
                status_code=200,
                payload=response,
            )
        return PaymentInitialization(
            reference=str(data.get("reference") or reference),
            authorization_url=str(authorization_url),
            access_code=data.get("access_code"),
        )

    def verify(self, reference: str) -> PaymentVerification:
        """Ask the gateway for the payment state. Transport failures come back as PENDING."""
        try:
            response = self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")
        except CircuitOpenError as exc:
            logger.warning("Paystack verify for %s skipped, breaker open for %.1fs", reference, exc.retry_after)
            return PaymentVerification(
                state=PaymentState.PENDING,
                message="Payment gateway is temporarily unavailable; try again later.",
                error_code="circuit_open",
                retry_after=exc.retry_after,
            )
        except RemoteCallError as exc:
            logger.warning("Paystack verify failed for %s: %s", reference, exc.message)
            return PaymentVerification(
                state=PaymentState.PENDING,
                message=f"Unable to confirm payment: {exc.message}",
                error_code="gateway_unavailable",
            )

        data = response.get("data")
        if not response.get("status") or not isinstance(data, dict):
            return PaymentVerification(
                state=PaymentState.PENDING,
                message=str(response.get("message") or "Payment not confirmed yet"),
            )

        metadata = data.get("metadata")
        amount = data.get("amount")
        try:
            amount_minor = int(amount) if amount not in (None, "") else None
        except (TypeError, ValueError):
            amount_minor = None
        provider_id = data.get("id")
        return PaymentVerification(
            state=classify_payment_status(data.get("status")),
            amount_minor=amount_minor,
            currency=str(data.get("currency") or "").upper() or None,
            provider_payment_id=str(provider_id) if provider_id not in (None, "") else None,
            metadata=metadata if isinstance(metadata, dict) else {},
            message=str(data.get("gateway_response") or response.get("message") or ""),
        )
