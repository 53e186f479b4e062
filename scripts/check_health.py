#!/usr/bin/env python3
"""Deployment health checks for the data relay."""

from __future__ import annotations

import os
import time
from typing import Any

import httpx


def fail(message: str) -> None:
    print(f"ERROR: {message}")
    raise SystemExit(1)


def normalize_base_url(base_url: str) -> str:
    url = (base_url or "").strip().rstrip("/")
    # Accept accidental values like ".../api" in secrets.
    if url.endswith("/api"):
        return url[: -len("/api")]
    return url


def _request_json(client: httpx.Client, url: str) -> tuple[int, dict[str, Any]]:
    response = client.get(url, headers={"User-Agent": "datarelay-healthcheck/1.0"})
    try:
        data = response.json()
    except ValueError:
        raise RuntimeError(f"{url} did not return valid JSON.")
    if not isinstance(data, dict):
        raise RuntimeError(f"{url} returned JSON that is not an object.")
    return response.status_code, data


def open_breakers(data: dict[str, Any]) -> list[str]:
    breakers = data.get("breakers") or {}
    return sorted(name for name, item in breakers.items() if isinstance(item, dict) and str(item.get("state") or "").upper() == "OPEN")


def check_endpoint(
    client: httpx.Client,
    base_url: str,
    path: str,
    expected_status: str,
    *,
    retries: int,
    retry_delay: float,
    sleep=time.sleep,
) -> dict[str, Any]:
    url = f"{base_url}{path}"
    last_error = None

    for attempt in range(retries + 1):
        try:
            status_code, data = _request_json(client, url)
            if status_code != 200:
                raise RuntimeError(f"{path} returned HTTP {status_code}, expected 200.")
            tripped = open_breakers(data)
            if tripped:
                raise RuntimeError(f"{path} reports open circuit breaker(s): {', '.join(tripped)}.")
            actual_status = data.get("status")
            if actual_status != expected_status:
                raise RuntimeError(
                    f"{path} status mismatch: expected '{expected_status}', got '{actual_status}'."
                )
            print(f"OK: {path} -> status={actual_status}")
            return data
        except httpx.HTTPError as exc:
            last_error = f"{path} request failed: {exc}"
        except RuntimeError as exc:
            last_error = str(exc)

        if attempt < retries:
            wait = retry_delay * (attempt + 1)
            print(f"WARN: {last_error} (retry {attempt + 1}/{retries} in {wait:.1f}s)")
            sleep(wait)

    fail(last_error or f"{path} failed")


def main() -> None:
    base_url = normalize_base_url(os.getenv("RELAY_BASE_URL", ""))
    if not base_url:
        fail("Missing RELAY_BASE_URL environment variable.")

    timeout = float(os.getenv("HEALTHCHECK_TIMEOUT_SECONDS", "25"))
    retries = int(os.getenv("HEALTHCHECK_RETRIES", "4"))
    retry_delay = float(os.getenv("HEALTHCHECK_RETRY_DELAY_SECONDS", "4"))

    print(
        f"Healthcheck config: base_url={base_url} timeout={timeout}s retries={retries} "
        f"retry_delay={retry_delay}s"
    )

    with httpx.Client(timeout=timeout) as client:
        check_endpoint(client, base_url, "/health", "ok", retries=retries, retry_delay=retry_delay)
        check_endpoint(client, base_url, "/readyz", "ready", retries=retries, retry_delay=retry_delay)
    print("SUCCESS: all health checks passed.")


if __name__ == "__main__":
    main()
