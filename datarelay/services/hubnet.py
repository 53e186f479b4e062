import logging
import time
from decimal import Decimal, InvalidOperation
from urllib.parse import urlparse, urlunparse

from datarelay.core.config import get_settings
from datarelay.models.outcomes import FulfillmentOutcome
from datarelay.models.transaction import PurchaseIntent
from datarelay.services.circuit_breaker import CircuitBreaker
from datarelay.services.remote import (
    CircuitOpenError,
    ClientRejected,
    MalformedResponse,
    ProviderUnavailable,
    RemoteCallError,
    RemoteCaller,
    RemoteRequest,
)
from datarelay.utils.reference import is_valid_reference


settings = get_settings()
logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://console.hubnet.app/live/api/context/business/transaction"

_SUCCESS_CODES = {"0000", "00", "200"}
_SUCCESS_STATUS = {"success", "successful", "delivered", "completed", "ok", "done", "processing", "accepted", "queued"}
_FAILURE_STATUS = {"failed", "fail", "error", "rejected", "declined", "cancelled", "canceled"}

_SUCCESS_HINTS = ("successfully", "delivered", "completed", "placed", "processing")
_FAILURE_HINTS = ("failed", "unsuccessful", "unable", "error", "rejected", "declined", "invalid", "not allowed")
_BALANCE_HINTS = ("insufficient", "low balance", "top up", "topup", "not enough balance")


def normalize_hubnet_base_url(raw_url: str) -> str:
    url = str(raw_url or "").strip()
    if not url:
        return DEFAULT_BASE_URL
    parsed = urlparse(url)
    scheme = parsed.scheme or "https"
    normalized = urlunparse((scheme, parsed.netloc, (parsed.path or "").rstrip("/"), "", "", ""))
    return normalized.rstrip("/")


def _normalize_provider_text(value) -> str:
    return str(value or "").strip().lower()


def _provider_bool(value) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    raw = _normalize_provider_text(value)
    if raw in {"true", "1", "yes", "ok", "success", "successful", "delivered"}:
        return True
    if raw in {"false", "0", "no", "failed", "fail", "error", "unsuccessful"}:
        return False
    return None


def _contains_any(text: str, hints: tuple[str, ...]) -> bool:
    return any(hint in text for hint in hints)


def _safe_reason(value, limit: int = 255) -> str:
    text = str(value or "").strip()
    return text[:limit] if text else "Unknown provider error"


def _provider_message(response: dict) -> str:
    for key in ("message", "reason", "detail", "error", "errors"):
        value = response.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def is_insufficient_balance(response: dict | None) -> bool:
    if not isinstance(response, dict):
        return False
    text = " ".join(
        _normalize_provider_text(response.get(key)) for key in ("message", "reason", "detail", "error", "code")
    )
    return _contains_any(text, _BALANCE_HINTS)


def classify_fulfillment_response(response: dict) -> FulfillmentOutcome:
    """Map a 2xx purchase response to a typed outcome.

    ``status`` and ``code`` decide when present; message wording is only
    consulted when the provider sent neither.
    """
    status_value = response.get("status")
    status_flag = _provider_bool(status_value)
    status_text = _normalize_provider_text(status_value if not isinstance(status_value, bool) else "")
    code = _normalize_provider_text(response.get("code"))
    message_text = _normalize_provider_text(_provider_message(response))
    txn_id = response.get("transaction_id") or response.get("transactionId") or response.get("id")
    data = response.get("data")
    if not txn_id and isinstance(data, dict):
        txn_id = data.get("transaction_id") or data.get("reference")

    success_signal = status_flag is True or code in _SUCCESS_CODES or status_text in _SUCCESS_STATUS
    failure_signal = status_flag is False or status_text in _FAILURE_STATUS
    if not (success_signal or failure_signal):
        if is_insufficient_balance(response):
            return FulfillmentOutcome.insufficient_balance(_safe_reason(_provider_message(response)), raw=response)
        success_signal = _contains_any(message_text, _SUCCESS_HINTS)
        failure_signal = _contains_any(message_text, _FAILURE_HINTS)

    if success_signal and not failure_signal:
        return FulfillmentOutcome.success(str(txn_id) if txn_id not in (None, "") else None, raw=response)
    if failure_signal and not success_signal:
        if is_insufficient_balance(response):
            return FulfillmentOutcome.insufficient_balance(_safe_reason(_provider_message(response)), raw=response)
        return FulfillmentOutcome.rejected(
            _safe_reason(_provider_message(response) or "Data provider rejected purchase"),
            raw=response,
        )
    # Contradictory or empty signals: the order may exist upstream.
    return FulfillmentOutcome.unavailable(
        _safe_reason(_provider_message(response) or "Data provider returned an unclear response"),
        ambiguous=True,
    )


def parse_balance(payload: dict | None) -> Decimal | None:
    if not isinstance(payload, dict):
        return None
    candidates = [payload]
    data = payload.get("data")
    if isinstance(data, dict):
        candidates.insert(0, data)
    for item in candidates:
        for key in ("wallet_balance", "balance", "available_balance", "amount"):
            value = item.get(key)
            if value in (None, "") or isinstance(value, bool):
                continue
            try:
                return Decimal(str(value).replace(",", ""))
            except InvalidOperation:
                continue
    return None


class HubnetClient:
    def __init__(self, caller: RemoteCaller, breaker: CircuitBreaker | None = None):
        self.caller = caller
        self.breaker = breaker
        self.base_url = normalize_hubnet_base_url(str(settings.hubnet_base_url))
        self.api_key = settings.hubnet_api_key
        self.timeout = settings.hubnet_timeout_seconds
        self.retry_count = settings.hubnet_retry_count
        self.purchase_retry_count = settings.hubnet_purchase_retry_count
        self.balance_path = str(settings.hubnet_balance_path or "/check_balance").strip() or "/check_balance"
        if not self.balance_path.startswith("/"):
            self.balance_path = "/" + self.balance_path

    def _headers(self) -> dict:
        return {
            "token": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, payload: dict | None = None, *, retry_count: int | None = None) -> dict:
        return self.caller.call(
            RemoteRequest(
                method=method,
                url=f"{self.base_url}{path}",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
                max_retries=self.retry_count if retry_count is None else max(0, int(retry_count)),
                breaker=self.breaker,
                label="hubnet",
            )
        )

    def check_balance(self) -> dict:
        """Raw balance payload from the provider. Raises RemoteCallError."""
        if settings.hubnet_test_mode:
            return {"status": True, "data": {"wallet_balance": "10000.00"}, "message": "Test mode balance."}
        return self._request("GET", self.balance_path)

    def _preflight(self, intent: PurchaseIntent) -> FulfillmentOutcome | None:
        if not settings.hubnet_balance_check or settings.hubnet_test_mode:
            return None
        try:
            balance = parse_balance(self.check_balance())
        except RemoteCallError as exc:
            # The purchase call itself will surface a real outage.
            logger.warning("Hubnet balance check failed, continuing with purchase: %s", exc.message)
            return None
        if balance is not None and balance < intent.amount:
            reason = f"Upstream balance {balance} is below the order amount {intent.amount}"
            logger.warning("Hubnet pre-flight: %s", reason)
            return FulfillmentOutcome.insufficient_balance(reason, raw={"balance": str(balance)})
        return None

    def fulfill(
        self,
        intent: PurchaseIntent,
        reference: str,
        *,
        webhook_url: str | None = None,
        referrer: str | None = None,
    ) -> FulfillmentOutcome:
        """Submit the bundle order. Never raises RemoteCallError."""
        if not is_valid_reference(reference):
            return FulfillmentOutcome.rejected(f"Reference {reference!r} does not meet provider length rules")

        if settings.hubnet_test_mode:
            # In explicit test mode we never hit the external provider.
            if intent.target_contact.startswith("0000"):
                return FulfillmentOutcome.rejected("Test mode: simulated provider failure.")
            raw = {
                "status": True,
                "code": "0000",
                "transaction_id": f"HUB-TEST-{int(time.time())}",
                "message": "Test mode: simulated delivery.",
            }
            return FulfillmentOutcome.success(raw["transaction_id"], raw=raw)

        preflight = self._preflight(intent)
        if preflight is not None:
            return preflight

        payload = {
            "phone": intent.target_contact,
            "volume": str(intent.volume_mb),
            "reference": reference,
            "referrer": referrer or "",
            "webhook": webhook_url or "",
        }
        path = f"/{intent.network}-new-transaction"
        try:
            response = self._request("POST", path, payload, retry_count=self.purchase_retry_count)
        except ClientRejected as exc:
            if is_insufficient_balance(exc.payload if isinstance(exc.payload, dict) else {"message": exc.message}):
                return FulfillmentOutcome.insufficient_balance(_safe_reason(exc.message), raw=exc.payload or {})
            return FulfillmentOutcome.rejected(
                _safe_reason(exc.message),
                raw=exc.payload if isinstance(exc.payload, dict) else {},
            )
        except CircuitOpenError as exc:
            return FulfillmentOutcome.circuit_open(_safe_reason(exc.message), retry_after=exc.retry_after)
        except MalformedResponse as exc:
            return FulfillmentOutcome.unavailable(_safe_reason(exc.message), ambiguous=True)
        except ProviderUnavailable as exc:
            reached = exc.timed_out or (exc.status_code is not None and exc.status_code >= 500)
            return FulfillmentOutcome.unavailable(_safe_reason(exc.message), ambiguous=reached)
        except RemoteCallError as exc:
            return FulfillmentOutcome.unavailable(_safe_reason(exc.message))

        outcome = classify_fulfillment_response(response)
        logger.info(
            "Hubnet order %s for %s kind=%s provider_txn=%s",
            reference,
            intent.network,
            outcome.kind.value,
            outcome.provider_txn_id,
        )
        return outcome
