import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from datarelay.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpen


logger = logging.getLogger(__name__)


class RemoteCallError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw = raw
        self.payload = payload


class ClientRejected(RemoteCallError):
    """Provider answered 4xx (other than 429). Never retried."""


class ServerError(RemoteCallError):
    """Provider answered 5xx or 429."""


class ProviderTimeout(RemoteCallError):
    pass


class NetworkError(RemoteCallError):
    pass


class MalformedResponse(RemoteCallError):
    pass


class CircuitOpenError(RemoteCallError):
    def __init__(self, message: str, *, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailable(RemoteCallError):
    def __init__(self, message: str, *, timed_out: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.timed_out = timed_out


RETRYABLE_ERRORS = (ServerError, ProviderTimeout, NetworkError)
# Errors that prove the dependency is up; they do not count against a breaker.
BREAKER_NEUTRAL_ERRORS = (ClientRejected,)


def extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if isinstance(data, dict):
        for key in ("message", "reason", "detail", "error", "errors"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, list) and value:
                first = value[0]
                if isinstance(first, str) and first.strip():
                    return first.strip()
                if isinstance(first, dict):
                    msg = first.get("message") or first.get("detail")
                    if isinstance(msg, str) and msg.strip():
                        return msg.strip()
    text = (response.text or "").strip()
    return text[:300] if text else f"HTTP {response.status_code}"


@dataclass
class RemoteRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    params: Optional[dict[str, Any]] = None
    timeout: float = 15.0
    max_retries: int = 0
    breaker: Optional[CircuitBreaker] = None
    label: str = "remote"


class RemoteCaller:
    """Timeout, exponential backoff with jitter, and circuit breaking for outbound calls."""

    def __init__(
        self,
        *,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.transport = transport
        self._sleep = sleep
        self._jitter = jitter

    def backoff_delay(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** (attempt - 1)) * self._jitter(0.9, 1.1)
        return min(self.max_delay, delay)

    def _attempt(self, request: RemoteRequest, attempt: int) -> dict:
        start = time.time()
        try:
            with httpx.Client(timeout=request.timeout, transport=self.transport) as client:
                response = client.request(
                    request.method,
                    request.url,
                    json=request.json,
                    params=request.params,
                    headers=request.headers,
                )
        except httpx.TimeoutException as exc:
            logger.warning("%s %s %s timed out after %ss attempt=%s", request.label, request.method, request.url, request.timeout, attempt)
            raise ProviderTimeout(f"{request.label} timed out", raw=str(exc)) from exc
        except httpx.TransportError as exc:
            logger.warning("%s %s %s network error attempt=%s: %s", request.label, request.method, request.url, attempt, exc)
            raise NetworkError(f"Unable to reach {request.label}", raw=str(exc)) from exc

        duration_ms = round((time.time() - start) * 1000, 2)
        logger.info(
            "%s %s %s status=%s duration=%sms attempt=%s",
            request.label,
            request.method,
            request.url,
            response.status_code,
            duration_ms,
            attempt,
        )
        if response.status_code >= 500 or response.status_code == 429:
            raise ServerError(extract_error_message(response), status_code=response.status_code, raw=response.text)
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            raise ClientRejected(
                extract_error_message(response),
                status_code=response.status_code,
                raw=response.text,
                payload=payload,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponse(
                f"{request.label} returned invalid JSON response.",
                status_code=response.status_code,
                raw=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise MalformedResponse(
                f"{request.label} returned a non-object JSON response.",
                status_code=response.status_code,
                raw=response.text,
            )
        return data

    def call(self, request: RemoteRequest) -> dict:
        last_exc: RemoteCallError | None = None
        max_retries = max(0, int(request.max_retries))
        for attempt in range(1, max_retries + 2):
            try:
                if request.breaker is not None:
                    return request.breaker.call(self._attempt, request, attempt)
                return self._attempt(request, attempt)
            except CircuitBreakerOpen as exc:
                raise CircuitOpenError(str(exc), retry_after=exc.retry_after) from exc
            except RETRYABLE_ERRORS as exc:
                last_exc = exc
                if attempt > max_retries:
                    break
                delay = self.backoff_delay(attempt)
                logger.info(
                    "%s %s retry %s/%s in %.2fs: %s",
                    request.label,
                    request.method,
                    attempt,
                    max_retries,
                    delay,
                    exc.message,
                )
                self._sleep(delay)

        raise ProviderUnavailable(
            f"{request.label} unavailable after {max_retries + 1} attempt(s)",
            timed_out=isinstance(last_exc, ProviderTimeout),
            status_code=last_exc.status_code if last_exc else None,
            raw=last_exc.raw if last_exc else None,
        ) from last_exc
