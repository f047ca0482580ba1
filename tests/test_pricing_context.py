from __future__ import annotations

import pytest

from fakes import make_rule, make_trade, open_hours
from ruletrader.data.market_data import AccountSnapshot, Quote
from ruletrader.strategy.predicates import NoStrategy, PredicateCache
from ruletrader.strategy.pricing import (
    QuoteNotFound,
    build_context,
    order_quantity,
    value_from_percentage,
)


def _build(rule, trade, *, price: float = 100.0, holds: bool = False, quotes=None):
    return build_context(
        rule,
        trade,
        holds_position=holds,
        quotes=quotes if quotes is not None else {rule.symbol: Quote(symbol=rule.symbol, price=price, prev_close=98.0)},
        account=AccountSnapshot(cash=1000.0, buying_power=2000.0),
        market_hours=open_hours(120.0),
        predicates=PredicateCache(),
    )


def test_value_from_percentage() -> None:
    assert value_from_percentage(200.0, 1.0, "risk") == pytest.approx(198.0)
    assert value_from_percentage(200.0, 5.0, "profit") == pytest.approx(210.0)
    with pytest.raises(ValueError):
        value_from_percentage(200.0, 5.0, "loss")


def test_quantity_prefers_open_shares_after_partial_sell() -> None:
    rule = make_rule(number_of_shares=100)
    assert order_quantity(rule, None) == 100
    assert order_quantity(rule, make_trade(bought_shares=60)) == 60
    assert order_quantity(rule, make_trade(bought_shares=60, sold_shares=25)) == 35


def test_context_merges_rule_account_and_quote() -> None:
    rule = make_rule(entry={"buying_power": {"$gt": 1500}, "change": {"$gt": 0}})
    context = _build(rule, None)
    assert context.metadata.symbol == "AAPL"
    assert context.metadata.cash == 1000.0
    assert context.metadata.change == pytest.approx(2.0)
    assert context.entry_signal
    assert not context.exit_signal
    assert context.seconds_to_close == 120.0
    assert not context.risk_reached


def test_context_risk_and_profit_flags() -> None:
    rule = make_rule()
    trade = make_trade(buy_price=100.0, bought_shares=10, risk_value=101.0, profit_value=99.0)
    context = _build(rule, trade, holds=True)
    assert context.risk_reached
    assert context.profit_reached
    assert context.quantity == 10


def test_missing_quote_raises() -> None:
    with pytest.raises(QuoteNotFound):
        _build(make_rule(), None, quotes={})


def test_rule_without_predicates_raises() -> None:
    rule = make_rule()
    rule.strategy.entry = None
    rule.strategy.exit = None
    with pytest.raises(NoStrategy):
        _build(rule, None)
