from __future__ import annotations

import pytest

from fakes import make_rule, make_trade, open_hours
from ruletrader.data.market_data import Quote
from ruletrader.execution.gateway import OrderSide
from ruletrader.storage.models import TrailingStopConfig
from ruletrader.strategy.decision import (
    EXIT_SIGNAL,
    FORCED_LIQUIDATION,
    MANUAL_LIQUIDATION,
    PROFIT_REACHED,
    RISK_REACHED,
    DecisionSettings,
    decide,
    limit_price,
)
from ruletrader.strategy.predicates import PredicateCache
from ruletrader.strategy.pricing import build_context


def _context(rule, trade, price: float, *, holds: bool, seconds_to_close: float = 3600.0):
    return build_context(
        rule,
        trade,
        holds_position=holds,
        quotes={rule.symbol: Quote(symbol=rule.symbol, price=price)},
        account=None,
        market_hours=open_hours(seconds_to_close),
        predicates=PredicateCache(),
    )


def test_entry_signal_buys_when_flat() -> None:
    rule = make_rule(entry={"price": {"$lt": 50}})
    decision = decide(_context(rule, None, 49.0, holds=False), rule, None, DecisionSettings())
    assert decision.side == OrderSide.BUY


def test_no_entry_signal_does_nothing() -> None:
    rule = make_rule(entry={"price": {"$lt": 50}})
    decision = decide(_context(rule, None, 51.0, holds=False), rule, None, DecisionSettings())
    assert decision.side is None
    assert not decision.places_order


def test_risk_floor_breach_sells() -> None:
    rule = make_rule(risk_percentage=1.0)
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    decision = decide(_context(rule, trade, 98.5, holds=True), rule, trade, DecisionSettings())
    assert decision.side == OrderSide.SELL
    assert decision.reason == RISK_REACHED


def test_profit_target_sells() -> None:
    rule = make_rule(profit_percentage=2.0)
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0, profit_value=102.0)
    decision = decide(_context(rule, trade, 102.5, holds=True), rule, trade, DecisionSettings())
    assert decision.reason == PROFIT_REACHED


def test_exit_predicate_sells() -> None:
    rule = make_rule(exit={"price": {"$gte": 101}})
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    decision = decide(_context(rule, trade, 101.0, holds=True), rule, trade, DecisionSettings())
    assert decision.side == OrderSide.SELL
    assert decision.reason == EXIT_SIGNAL


def test_forced_liquidation_before_close() -> None:
    rule = make_rule(entry={"price": {"$lt": 1000}})
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    decision = decide(_context(rule, trade, 100.5, holds=True, seconds_to_close=25), rule, trade, DecisionSettings())
    assert decision.side == OrderSide.SELL
    assert decision.reason == FORCED_LIQUIDATION


def test_liquidation_window_blocks_entries() -> None:
    rule = make_rule(entry={"price": {"$lt": 1000}})
    decision = decide(_context(rule, None, 100.0, holds=False, seconds_to_close=25), rule, None, DecisionSettings())
    assert decision.side is None


def test_hold_overnight_skips_liquidation() -> None:
    rule = make_rule(hold_overnight=True)
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    decision = decide(_context(rule, trade, 100.2, holds=True, seconds_to_close=25), rule, trade, DecisionSettings())
    assert decision.side is None


def test_manual_sell_all_liquidates() -> None:
    rule = make_rule(hold_overnight=True)
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    settings = DecisionSettings(manual_sell_all=True)
    decision = decide(_context(rule, trade, 100.2, holds=True), rule, trade, settings)
    assert decision.reason == MANUAL_LIQUIDATION


def test_trailing_floor_is_running_max() -> None:
    trailing = TrailingStopConfig(enabled=True, target_percentage=2.0, risk_percentage_after_target=0.5)
    rule = make_rule(risk_percentage=1.0, trailing=trailing)
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    settings = DecisionSettings()
    floors: list[float] = []
    for price in (100.2, 100.8, 102.5, 102.1, 103.0, 102.6):
        decision = decide(_context(rule, trade, price, holds=True), rule, trade, settings)
        assert decision.side is None
        floors.append(trade.risk_value)

    assert floors == sorted(floors)
    assert trade.target_reached
    # 103.0 is the high; floor sits 0.5% under it
    assert trade.risk_value == pytest.approx(103.0 * 0.995)


def test_trailing_below_half_risk_leaves_floor() -> None:
    trailing = TrailingStopConfig(enabled=True, target_percentage=2.0, risk_percentage_after_target=0.5)
    rule = make_rule(risk_percentage=1.0, trailing=trailing)
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=99.0)
    decision = decide(_context(rule, trade, 100.3, holds=True), rule, trade, DecisionSettings())
    assert not decision.trade_updated
    assert trade.risk_value == 99.0


def test_limit_price_offsets() -> None:
    settings = DecisionSettings()
    assert limit_price(100.0, OrderSide.BUY, settings) == 100.01
    assert limit_price(100.0, OrderSide.SELL, settings) == 99.99
