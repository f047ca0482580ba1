from __future__ import annotations

import time
from typing import Any

import pytest
import requests

from ruletrader.data.alpaca_client import (
    AlpacaAuthError,
    AlpacaClient,
    AssetNotTradableError,
    InsufficientSharesError,
    OrderRejectedError,
    RetryableAlpacaAPIError,
    TokenBucketLimiter,
    _parse_retry_after,
    classify_order_rejection,
)


class _Response:
    def __init__(self, status_code: int, payload: Any = None, headers: dict[str, str] | None = None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = "" if payload is None else str(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class _Session:
    def __init__(self, responses: list[Any]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.headers: dict[str, str] = {}

    def request(self, **kwargs: Any) -> _Response:
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(monkeypatch, responses: list[Any]) -> tuple[AlpacaClient, _Session]:
    monkeypatch.setattr(time, "sleep", lambda _seconds: None)
    client = AlpacaClient(
        "https://paper-api.example",
        "https://data.example",
        "key",
        "secret",
        rate_limit_rps=100,
        rate_limit_burst=100,
        request_max_attempts=3,
    )
    session = _Session(responses)
    client.session = session  # type: ignore[assignment]
    return client, session


def test_token_bucket_limiter_applies_wait() -> None:
    limiter = TokenBucketLimiter(rate_per_second=5.0, burst=1)
    limiter.acquire()
    start = time.perf_counter()
    limiter.acquire()
    elapsed = time.perf_counter() - start
    assert elapsed >= 0.15


def test_parse_retry_after_seconds() -> None:
    assert _parse_retry_after({"Retry-After": "3"}) == 3.0
    assert _parse_retry_after({"Retry-After": "not-a-number"}) is None


def test_classify_order_rejection() -> None:
    assert classify_order_rejection("insufficient qty available for order (requested: 10)") is InsufficientSharesError
    assert classify_order_rejection("asset \"XYZ\" is not tradable") is AssetNotTradableError
    assert classify_order_rejection("potential wash trade detected") is OrderRejectedError


def test_429_then_success_is_retried(monkeypatch) -> None:
    client, session = _client(
        monkeypatch,
        [_Response(429, {"message": "slow down"}, {"Retry-After": "1"}), _Response(200, {"is_open": True})],
    )
    assert client.get_clock() == {"is_open": True}
    assert len(session.calls) == 2
    assert client.metrics_snapshot()["http_429_count"] == 1


def test_network_errors_exhaust_attempts(monkeypatch) -> None:
    client, session = _client(monkeypatch, [requests.ConnectionError("down")] * 3)
    with pytest.raises(RetryableAlpacaAPIError):
        client.get_account()
    assert len(session.calls) == 3


def test_order_post_is_not_retried_on_network_error(monkeypatch) -> None:
    client, session = _client(monkeypatch, [requests.ConnectionError("reset")])
    with pytest.raises(RetryableAlpacaAPIError):
        client.place_order(symbol="AAPL", side="buy", qty="1", limit_price="10", time_in_force="gtc", client_order_id="r1-x")
    assert len(session.calls) == 1


def test_order_rejection_is_classified(monkeypatch) -> None:
    client, _ = _client(monkeypatch, [_Response(403, {"message": "insufficient qty available for order"})])
    with pytest.raises(InsufficientSharesError):
        client.place_order(symbol="AAPL", side="sell", qty="5", limit_price="10", time_in_force="gtc", client_order_id="r1-y")


def test_auth_failure_is_not_retried(monkeypatch) -> None:
    client, session = _client(monkeypatch, [_Response(401, {"message": "unauthorized"})])
    with pytest.raises(AlpacaAuthError):
        client.get_account()
    assert len(session.calls) == 1


def test_missing_order_returns_none(monkeypatch) -> None:
    client, _ = _client(monkeypatch, [_Response(404, {"message": "order not found"})])
    assert client.get_order("abc") is None


def test_cancel_failure_returns_false(monkeypatch) -> None:
    client, _ = _client(monkeypatch, [_Response(422, {"message": "order is already filled"})])
    assert client.cancel_order("abc") is False


def test_snapshots_are_keyed_by_symbol(monkeypatch) -> None:
    payload = {"aapl": {"latestTrade": {"p": 190.5}}, "MSFT": {"latestTrade": {"p": 410.0}}}
    client, session = _client(monkeypatch, [_Response(200, payload)])
    snapshots = client.get_snapshots(["AAPL", "MSFT"])
    assert set(snapshots) == {"AAPL", "MSFT"}
    assert session.calls[0]["params"] == {"symbols": "AAPL,MSFT", "feed": "iex"}
    assert session.calls[0]["url"] == "https://data.example/v2/stocks/snapshots"
