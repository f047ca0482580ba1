from __future__ import annotations

from dataclasses import dataclass

from ruletrader.config import EngineConfig
from ruletrader.execution.gateway import OrderSide
from ruletrader.storage.models import RuleRecord, TradeRecord
from ruletrader.strategy.pricing import DecisionContext, value_from_percentage

FORCED_LIQUIDATION = "forced liquidation"
MANUAL_LIQUIDATION = "manual sell"
RISK_REACHED = "risk reached"
PROFIT_REACHED = "profit reached"
EXIT_SIGNAL = "exit signal"
ENTRY_SIGNAL = "entry signal"


@dataclass(frozen=True, slots=True)
class DecisionSettings:
    liquidation_window_seconds: float = 30.0
    override_market_close: bool = False
    manual_sell_all: bool = False
    buy_price_premium: float = 0.0001
    sell_price_discount: float = 0.0001
    price_decimals: int = 2

    @classmethod
    def from_config(cls, config: EngineConfig) -> "DecisionSettings":
        return cls(
            liquidation_window_seconds=config.liquidation_window_seconds,
            override_market_close=config.override_market_close,
            manual_sell_all=config.manual_sell_all,
            buy_price_premium=config.buy_price_premium,
            sell_price_discount=config.sell_price_discount,
            price_decimals=config.price_decimals,
        )


@dataclass(frozen=True, slots=True)
class Decision:
    side: OrderSide | None = None
    reason: str | None = None
    trade_updated: bool = False

    @property
    def places_order(self) -> bool:
        return self.side is not None


def limit_price(price: float, side: OrderSide, settings: DecisionSettings) -> float:
    if side == OrderSide.BUY:
        raw = price * (1 + settings.buy_price_premium)
    else:
        raw = price * (1 - settings.sell_price_discount)
    return round(raw, settings.price_decimals)


def tighten_trailing_stop(context: DecisionContext, rule: RuleRecord, trade: TradeRecord | None) -> bool:
    """Raise the trade's risk floor as the price moves up. Never lowers it."""
    trailing = rule.limits.trailing
    if trade is None or not trade.buy_price or not trailing.enabled:
        return False

    updated = False
    gain_pct = (context.price - trade.buy_price) / trade.buy_price * 100.0
    if not trade.target_reached and gain_pct >= trailing.target_percentage:
        trade.target_reached = True
        updated = True

    if trade.target_reached:
        floor_pct = trailing.risk_percentage_after_target
    elif gain_pct > rule.limits.risk_percentage / 2:
        floor_pct = rule.limits.risk_percentage
    else:
        return updated

    new_floor = value_from_percentage(context.price, floor_pct, "risk")
    if new_floor > trade.risk_value:
        trade.risk_value = new_floor
        updated = True
    return updated


def in_liquidation_window(context: DecisionContext, rule: RuleRecord, settings: DecisionSettings) -> bool:
    if settings.manual_sell_all:
        return True
    if settings.override_market_close or rule.hold_overnight:
        return False
    return context.seconds_to_close < settings.liquidation_window_seconds


def decide(
    context: DecisionContext,
    rule: RuleRecord,
    trade: TradeRecord | None,
    settings: DecisionSettings,
) -> Decision:
    # Checks run in priority order; the first that matches wins.
    if in_liquidation_window(context, rule, settings):
        if context.holds_position:
            reason = MANUAL_LIQUIDATION if settings.manual_sell_all else FORCED_LIQUIDATION
            return Decision(side=OrderSide.SELL, reason=reason)
        return Decision()

    if not context.holds_position:
        if context.entry_signal:
            return Decision(side=OrderSide.BUY, reason=ENTRY_SIGNAL)
        return Decision()

    if context.risk_reached:
        return Decision(side=OrderSide.SELL, reason=RISK_REACHED)
    if context.profit_reached:
        return Decision(side=OrderSide.SELL, reason=PROFIT_REACHED)
    if context.exit_signal:
        return Decision(side=OrderSide.SELL, reason=EXIT_SIGNAL)

    return Decision(trade_updated=tighten_trailing_stop(context, rule, trade))
