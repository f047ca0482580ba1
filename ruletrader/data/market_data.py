from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from ruletrader.clock import parse_timestamp, utc_now
from ruletrader.data.alpaca_client import AlpacaClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Quote:
    symbol: str
    price: float
    open: float | None = None
    high: float | None = None
    low: float | None = None
    volume: float | None = None
    prev_close: float | None = None

    @property
    def change(self) -> float | None:
        if self.prev_close is None:
            return None
        return self.price - self.prev_close

    @property
    def change_percent(self) -> float | None:
        if not self.prev_close:
            return None
        return (self.price - self.prev_close) / self.prev_close * 100.0


@dataclass(frozen=True, slots=True)
class MarketHours:
    is_closed_now: bool
    seconds_left_to_close: float
    next_close: datetime | None = None
    fetched_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    cash: float | None = None
    buying_power: float | None = None
    equity: float | None = None
    portfolio_value: float | None = None
    daytrade_count: int | None = None


class QuoteProvider(Protocol):
    def get_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        ...


class MarketClock(Protocol):
    def get_market_hours(self) -> MarketHours:
        ...


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def quote_from_snapshot(symbol: str, snapshot: dict[str, Any]) -> Quote | None:
    latest_trade = snapshot.get("latestTrade") or {}
    daily_bar = snapshot.get("dailyBar") or {}
    minute_bar = snapshot.get("minuteBar") or {}
    prev_bar = snapshot.get("prevDailyBar") or {}
    price = _as_float(latest_trade.get("p")) or _as_float(minute_bar.get("c")) or _as_float(daily_bar.get("c"))
    if price is None:
        return None
    return Quote(
        symbol=symbol,
        price=price,
        open=_as_float(daily_bar.get("o")),
        high=_as_float(daily_bar.get("h")),
        low=_as_float(daily_bar.get("l")),
        volume=_as_float(daily_bar.get("v")),
        prev_close=_as_float(prev_bar.get("c")),
    )


def market_hours_from_clock(payload: dict[str, Any], now: datetime | None = None) -> MarketHours:
    current = parse_timestamp(payload.get("timestamp")) or now or utc_now()
    next_close = parse_timestamp(payload.get("next_close"))
    seconds_left = (next_close - current).total_seconds() if next_close is not None else float("inf")
    return MarketHours(
        is_closed_now=not bool(payload.get("is_open")),
        seconds_left_to_close=max(0.0, seconds_left),
        next_close=next_close,
        fetched_at=now or datetime.now(timezone.utc),
    )


def account_from_payload(payload: dict[str, Any]) -> AccountSnapshot:
    daytrades = payload.get("daytrade_count")
    return AccountSnapshot(
        cash=_as_float(payload.get("cash")),
        buying_power=_as_float(payload.get("buying_power")),
        equity=_as_float(payload.get("equity")),
        portfolio_value=_as_float(payload.get("portfolio_value")),
        daytrade_count=int(daytrades) if daytrades is not None else None,
    )


class MarketDataService:
    def __init__(self, client: AlpacaClient):
        self.client = client

    def get_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        unique = sorted({symbol.strip().upper() for symbol in symbols if symbol.strip()})
        snapshots = self.client.get_snapshots(unique)
        output: dict[str, Quote] = {}
        for symbol in unique:
            snapshot = snapshots.get(symbol)
            if snapshot is None:
                LOGGER.warning("No snapshot returned for %s", symbol)
                continue
            quote = quote_from_snapshot(symbol, snapshot)
            if quote is not None:
                output[symbol] = quote
        return output

    def get_market_hours(self) -> MarketHours:
        return market_hours_from_clock(self.client.get_clock())

    def get_account(self) -> AccountSnapshot:
        return account_from_payload(self.client.get_account())

