from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any

import requests

LOGGER = logging.getLogger(__name__)


class AlpacaAPIError(RuntimeError):
    """Non-retryable Alpaca API error."""


class RetryableAlpacaAPIError(AlpacaAPIError):
    """Retryable API/network error."""


class AlpacaAuthError(AlpacaAPIError):
    """Rejected API key/secret."""


class OrderRejectedError(AlpacaAPIError):
    """Broker refused an order request."""


class InsufficientSharesError(OrderRejectedError):
    """Sell quantity exceeds the shares available in the account."""


class AssetNotTradableError(OrderRejectedError):
    """Instrument cannot be traded on this account."""


_INSUFFICIENT_PATTERNS = (
    "insufficient qty",
    "insufficient quantity",
    "not enough shares",
)
_NOT_TRADABLE_PATTERNS = (
    "not tradable",
    "cannot be traded",
    "asset not found",
    "not active",
)


def classify_order_rejection(message: str) -> type[OrderRejectedError]:
    text = message.lower()
    if any(item in text for item in _INSUFFICIENT_PATTERNS):
        return InsufficientSharesError
    if any(item in text for item in _NOT_TRADABLE_PATTERNS):
        return AssetNotTradableError
    return OrderRejectedError


@dataclass(slots=True)
class AlpacaClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_errors: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            wait_seconds = 0.0
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(
                    float(self.capacity),
                    self.tokens + elapsed * self.rate_per_second,
                )
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text


class AlpacaClient:
    """
    Alpaca REST client for the trading and market-data APIs.

    Auth is header based (APCA-API-KEY-ID / APCA-API-SECRET-KEY), there is no
    session to refresh. Order endpoints are never retried after the request was
    sent, the client order id makes a manual resubmit safe.
    """

    def __init__(
        self,
        base_url: str,
        data_url: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: int = 10,
        *,
        data_feed: str = "iex",
        rate_limit_rps: float = 3.0,
        rate_limit_burst: int = 10,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.data_url = data_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.data_feed = data_feed
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "APCA-API-KEY-ID": api_key,
                "APCA-API-SECRET-KEY": api_secret,
            }
        )
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = AlpacaClientMetrics()
        self._metrics_lock = threading.Lock()

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            snapshot = AlpacaClientMetrics(
                total_requests=self._metrics.total_requests,
                total_retries=self._metrics.total_retries,
                http_429_count=self._metrics.http_429_count,
                network_errors=self._metrics.network_errors,
            )
        return asdict(snapshot)

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = min(self.backoff_max_seconds, max(0.0, retry_after))
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying Alpaca API call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _send_http(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests", 1)
        return self.session.request(
            method=method,
            url=url,
            params=params,
            json=json_payload,
            timeout=self.timeout_seconds,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        data_api: bool = False,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_404: bool = False,
        retry_network: bool = True,
    ) -> Any:
        url = f"{self.data_url if data_api else self.base_url}{path}"

        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send_http(method=method, url=url, params=params, json_payload=json)
            except requests.RequestException as exc:
                self._metric_add("network_errors", 1)
                if not retry_network or attempt >= self.request_max_attempts:
                    raise RetryableAlpacaAPIError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason=f"network:{type(exc).__name__}",
                )
                continue

            if response.status_code in (401, 403) and not path.startswith("/v2/orders"):
                raise AlpacaAuthError(
                    f"Authorization failed {method} {path}: HTTP {response.status_code} {response.text}"
                )

            if response.status_code == 429:
                self._metric_add("http_429_count", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableAlpacaAPIError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504) and retry_network:
                if attempt >= self.request_max_attempts:
                    raise RetryableAlpacaAPIError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason=f"http_{response.status_code}",
                )
                continue

            if response.status_code == 404 and allow_404:
                return None

            if response.status_code >= 400:
                message = _error_message(response)
                if method == "POST" and path == "/v2/orders":
                    error_cls = classify_order_rejection(message)
                    raise error_cls(f"Order rejected: HTTP {response.status_code} {message}")
                raise AlpacaAPIError(
                    f"API error {method} {path}: HTTP {response.status_code} {message}"
                )

            if not response.text:
                return {}
            return response.json()

        raise RetryableAlpacaAPIError(f"Could not complete request {method} {path}")

    def get_account(self) -> dict[str, Any]:
        return self._request("GET", "/v2/account")

    def get_clock(self) -> dict[str, Any]:
        return self._request("GET", "/v2/clock")

    def get_snapshots(self, symbols: list[str]) -> dict[str, dict[str, Any]]:
        if not symbols:
            return {}
        payload = self._request(
            "GET",
            "/v2/stocks/snapshots",
            data_api=True,
            params={"symbols": ",".join(symbols), "feed": self.data_feed},
        )
        if not isinstance(payload, dict):
            return {}
        snapshots = payload.get("snapshots", payload)
        return {str(symbol).upper(): data for symbol, data in snapshots.items() if isinstance(data, dict)}

    def place_order(
        self,
        *,
        symbol: str,
        side: str,
        qty: str,
        limit_price: str,
        time_in_force: str,
        client_order_id: str,
    ) -> dict[str, Any]:
        payload = {
            "symbol": symbol,
            "qty": qty,
            "side": side,
            "type": "limit",
            "time_in_force": time_in_force,
            "limit_price": limit_price,
            "client_order_id": client_order_id,
        }
        return self._request("POST", "/v2/orders", json=payload, retry_network=False)

    def cancel_order(self, order_id: str) -> bool:
        try:
            self._request("DELETE", f"/v2/orders/{order_id}")
        except AlpacaAPIError as exc:
            LOGGER.warning("Cancel order failed (%s): %s", order_id, exc)
            return False
        return True

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        return self._request("GET", f"/v2/orders/{order_id}", allow_404=True)

    def get_position(self, symbol: str) -> dict[str, Any] | None:
        return self._request("GET", f"/v2/positions/{symbol}", allow_404=True)
