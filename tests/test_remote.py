import httpx
import pytest

from datarelay.services.circuit_breaker import CircuitBreaker, CircuitState
from datarelay.services.remote import (
    BREAKER_NEUTRAL_ERRORS,
    CircuitOpenError,
    ClientRejected,
    MalformedResponse,
    ProviderUnavailable,
    RemoteCaller,
    RemoteRequest,
)


URL = "https://provider.test/api/thing"


def _caller(handler, sleeps=None):
    sleeps = sleeps if sleeps is not None else []
    return RemoteCaller(
        base_delay=0.5,
        max_delay=8.0,
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
        jitter=lambda low, high: 1.0,
    )


def _counting(responses):
    calls = []

    def handler(request):
        calls.append(request)
        return responses[min(len(calls), len(responses)) - 1]

    return handler, calls


def test_retries_server_errors_with_exponential_backoff():
    handler, calls = _counting(
        [
            httpx.Response(503, json={"message": "busy"}),
            httpx.Response(502, json={"message": "busy"}),
            httpx.Response(500, json={"message": "busy"}),
            httpx.Response(200, json={"status": True}),
        ]
    )
    sleeps = []
    out = _caller(handler, sleeps).call(RemoteRequest("GET", URL, max_retries=3))
    assert out == {"status": True}
    assert len(calls) == 4
    assert sleeps == [0.5, 1.0, 2.0]


def test_backoff_is_capped():
    caller = RemoteCaller(base_delay=0.5, max_delay=8.0, jitter=lambda low, high: high)
    assert caller.backoff_delay(1) == pytest.approx(0.55)
    assert caller.backoff_delay(10) == 8.0


def test_client_error_is_single_attempt():
    handler, calls = _counting([httpx.Response(404, json={"message": "Not found"})])
    with pytest.raises(ClientRejected) as exc_info:
        _caller(handler).call(RemoteRequest("GET", URL, max_retries=3))
    assert len(calls) == 1
    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "Not found"
    assert exc_info.value.payload == {"message": "Not found"}


def test_rate_limited_response_is_retried():
    handler, calls = _counting([httpx.Response(429, text="slow down"), httpx.Response(200, json={"ok": True})])
    assert _caller(handler).call(RemoteRequest("GET", URL, max_retries=1)) == {"ok": True}
    assert len(calls) == 2


def test_malformed_success_body_is_not_retried():
    handler, calls = _counting([httpx.Response(200, text="<html>oops</html>")])
    with pytest.raises(MalformedResponse):
        _caller(handler).call(RemoteRequest("GET", URL, max_retries=3))
    assert len(calls) == 1


def test_exhausted_timeouts_raise_provider_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    sleeps = []
    with pytest.raises(ProviderUnavailable) as exc_info:
        _caller(handler, sleeps).call(RemoteRequest("POST", URL, json={"a": 1}, max_retries=2))
    assert exc_info.value.timed_out is True
    assert len(sleeps) == 2


def test_network_error_is_not_marked_as_timeout():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderUnavailable) as exc_info:
        _caller(handler).call(RemoteRequest("GET", URL))
    assert exc_info.value.timed_out is False


def test_open_breaker_fails_fast_without_request():
    handler, calls = _counting([httpx.Response(500, json={"message": "down"})])
    breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=30)
    caller = _caller(handler)
    request = RemoteRequest("GET", URL, max_retries=1, breaker=breaker)

    with pytest.raises(ProviderUnavailable):
        caller.call(request)
    assert breaker.state == CircuitState.OPEN
    assert len(calls) == 2

    with pytest.raises(CircuitOpenError):
        caller.call(request)
    assert len(calls) == 2


def test_client_errors_do_not_trip_breaker():
    handler, calls = _counting([httpx.Response(400, json={"message": "bad phone"})])
    breaker = CircuitBreaker("test", failure_threshold=1, ignored_exceptions=BREAKER_NEUTRAL_ERRORS)
    caller = _caller(handler)
    for _ in range(3):
        with pytest.raises(ClientRejected):
            caller.call(RemoteRequest("GET", URL, breaker=breaker))
    assert breaker.state == CircuitState.CLOSED
    assert len(calls) == 3
