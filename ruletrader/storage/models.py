from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Frequency(str, Enum):
    FIVE_SECONDS = "5s"
    ONE_MINUTE = "1m"


@dataclass(slots=True)
class TrailingStopConfig:
    enabled: bool = False
    target_percentage: float = 0.0
    risk_percentage_after_target: float = 0.0


@dataclass(slots=True)
class LimitsConfig:
    risk_percentage: float
    profit_percentage: float | None = None
    trailing: TrailingStopConfig = field(default_factory=TrailingStopConfig)


@dataclass(slots=True)
class StrategyConfig:
    entry: dict[str, Any] | None = None
    exit: dict[str, Any] | None = None


@dataclass(slots=True)
class RuleRecord:
    rule_id: str
    name: str
    symbol: str
    exchange: str
    frequency: Frequency
    enabled: bool
    number_of_shares: float
    strategy: StrategyConfig
    limits: LimitsConfig
    hold_overnight: bool = False
    disable_after_sold: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_continuation(self) -> bool:
        return bool(self.strategy.entry) and not self.disable_after_sold


@dataclass(slots=True)
class TradeRecord:
    trade_id: str
    rule_id: str
    buy_order_id: str | None = None
    sell_order_id: str | None = None
    buy_price: float | None = None
    buy_date: datetime | None = None
    sell_price: float | None = None
    sell_date: datetime | None = None
    bought_shares: float = 0.0
    sold_shares: float = 0.0
    risk_value: float = 0.0
    profit_value: float | None = None
    target_reached: bool = False
    completed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def open_shares(self) -> float:
        return max(0.0, self.bought_shares - self.sold_shares)
