from __future__ import annotations

import pytest

from fakes import FakeGateway, make_rule, make_store, make_trade
from ruletrader.execution.gateway import OrderSide, OrderStatus
from ruletrader.execution.lifecycle import (
    CancelFailed,
    ExitPending,
    Flat,
    Long,
    LongPending,
    OrderNotFound,
    PartialCancelFailed,
    ReconciliationError,
    TradeLifecycle,
    position_state,
)


def _lifecycle(tmp_path):
    store = make_store(tmp_path)
    gateway = FakeGateway()
    return TradeLifecycle(gateway=gateway, store=store), gateway, store


def test_position_state_classification() -> None:
    assert isinstance(position_state(None), Flat)
    assert isinstance(position_state(make_trade()), LongPending)
    assert isinstance(position_state(make_trade(buy_price=10.0, bought_shares=5)), Long)
    assert isinstance(position_state(make_trade(buy_price=10.0, bought_shares=5, sell_order_id="S1")), ExitPending)


def test_no_trade_is_flat(tmp_path) -> None:
    lifecycle, gateway, _ = _lifecycle(tmp_path)
    result = lifecycle.reconcile(make_rule(), None)
    assert isinstance(result.state, Flat)
    assert result.last_order_is_sell
    assert gateway.cancelled == []


def test_full_buy_fill_populates_trade(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    rule = make_rule(risk_percentage=2.0, profit_percentage=5.0)
    store.save_rule(rule)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100, filled_quantity=100, filled_price=50.0)

    result = lifecycle.reconcile(rule, trade)

    assert isinstance(result.state, Long)
    assert result.last_order_is_buy
    assert not result.skip
    assert trade.buy_price == 50.0
    assert trade.bought_shares == 100
    assert trade.buy_date is not None
    assert trade.risk_value == pytest.approx(49.0)
    assert trade.profit_value == pytest.approx(52.5)
    saved = store.get_trade("t1")
    assert saved is not None and saved.buy_price == 50.0
    assert gateway.cancelled == []


def test_partial_buy_cancels_remainder(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    rule = make_rule()
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100, filled_quantity=60, filled_price=20.0)

    result = lifecycle.reconcile(rule, trade)

    assert gateway.cancelled == ["B1"]
    assert gateway.orders["B1"].status == OrderStatus.CANCELLED
    assert isinstance(result.state, Long)
    assert not result.skip
    assert trade.bought_shares == 60
    assert trade.buy_price == 20.0


def test_partial_buy_cancel_failure_raises(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100, filled_quantity=60, filled_price=20.0)
    gateway.cancel_failures.add("B1")

    with pytest.raises(PartialCancelFailed):
        lifecycle.reconcile(make_rule(), trade)


def test_late_buy_fill_raises_bought_shares(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade(buy_price=20.0, bought_shares=60)
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100, filled_quantity=70, filled_price=20.0, status=OrderStatus.CANCELLED)

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Long)
    assert trade.bought_shares == 70
    saved = store.get_trade("t1")
    assert saved is not None and saved.bought_shares == 70


def test_pending_buy_is_cancelled_and_trade_removed(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100)

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Flat)
    assert gateway.cancelled == ["B1"]
    assert store.get_trade("t1") is None


def test_pending_buy_cancel_failure_raises(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100)
    gateway.cancel_failures.add("B1")

    with pytest.raises(CancelFailed):
        lifecycle.reconcile(make_rule(), trade)
    assert store.get_trade("t1") is not None


def test_pending_sell_rolls_back_to_long(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade(buy_price=20.0, bought_shares=100, sell_order_id="S1")
    store.save_trade(trade)
    gateway.add_order("S1", side=OrderSide.SELL, quantity=100)

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Long)
    assert trade.sell_order_id is None
    assert trade.sell_price is None
    assert not trade.completed
    assert gateway.cancelled == ["S1"]


def test_partial_sell_folds_into_sold_shares(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade(buy_price=20.0, bought_shares=100, sell_order_id="S1")
    store.save_trade(trade)
    gateway.add_order("S1", side=OrderSide.SELL, quantity=100, filled_quantity=30, filled_price=21.0)

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Long)
    assert gateway.cancelled == ["S1"]
    assert trade.sold_shares == 30
    assert trade.open_shares == 70
    assert trade.sell_order_id is None
    assert not trade.completed


def test_full_sell_completes_and_disables_one_shot_rule(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    rule = make_rule(disable_after_sold=True)
    store.save_rule(rule)
    trade = make_trade(buy_price=20.0, bought_shares=100, sell_order_id="S1")
    store.save_trade(trade)
    gateway.add_order("S1", side=OrderSide.SELL, quantity=100, filled_quantity=100, filled_price=22.0)

    result = lifecycle.reconcile(rule, trade)

    assert isinstance(result.state, Flat)
    assert result.skip
    assert result.trade is None
    saved = store.get_trade("t1")
    assert saved is not None
    assert saved.completed
    assert saved.sell_price == 22.0
    assert saved.sold_shares == 100
    assert store.get_incomplete_trades() == []
    saved_rule = store.get_rule("r1")
    assert saved_rule is not None and not saved_rule.enabled


def test_full_sell_keeps_rule_with_continuation(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    rule = make_rule()
    store.save_rule(rule)
    trade = make_trade(buy_price=20.0, bought_shares=100, sold_shares=40, sell_order_id="S2")
    store.save_trade(trade)
    gateway.add_order("S2", side=OrderSide.SELL, quantity=60, filled_quantity=60, filled_price=22.0)

    result = lifecycle.reconcile(rule, trade)

    assert isinstance(result.state, Flat)
    assert not result.skip
    assert rule.enabled
    assert trade.completed


def test_missing_order_raises_not_found(tmp_path) -> None:
    lifecycle, _, store = _lifecycle(tmp_path)
    trade = make_trade(buy_order_id="GONE")
    store.save_trade(trade)

    with pytest.raises(OrderNotFound):
        lifecycle.reconcile(make_rule(), trade)


def test_trade_without_order_ids_is_rejected(tmp_path) -> None:
    lifecycle, _, _ = _lifecycle(tmp_path)
    trade = make_trade(buy_order_id=None, buy_price=20.0, bought_shares=10)

    with pytest.raises(ReconciliationError):
        lifecycle.reconcile(make_rule(), trade)


def test_unsettled_sell_cancel_keeps_exit_pending(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade(buy_price=20.0, bought_shares=100, sell_order_id="S1")
    store.save_trade(trade)
    gateway.add_order("S1", side=OrderSide.SELL, quantity=100)
    gateway.deferred_cancels.add("S1")

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, ExitPending)
    assert result.skip
    assert trade.sell_order_id == "S1"
    saved = store.get_trade("t1")
    assert saved is not None and saved.sell_order_id == "S1"

    result = lifecycle.reconcile(make_rule(), trade)
    assert result.skip
    assert gateway.cancelled == ["S1"]

    gateway.settle_cancel("S1")
    result = lifecycle.reconcile(make_rule(), trade)
    assert isinstance(result.state, Long)
    assert not result.skip
    assert trade.sell_order_id is None


def test_unsettled_buy_cancel_keeps_trade_for_late_fill(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100)
    gateway.deferred_cancels.add("B1")

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, LongPending)
    assert result.skip
    assert [t.trade_id for t in store.get_incomplete_trades()] == ["t1"]

    gateway.fill("B1", 10.0)
    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Long)
    assert trade.bought_shares == 100
    assert trade.buy_price == 10.0
    saved = store.get_trade("t1")
    assert saved is not None and saved.bought_shares == 100


def test_unsettled_buy_cancel_removes_trade_once_settled(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100)
    gateway.deferred_cancels.add("B1")

    assert lifecycle.reconcile(make_rule(), trade).skip
    gateway.settle_cancel("B1")
    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Flat)
    assert store.get_trade("t1") is None


def test_partial_sell_is_folded_only_after_cancel_settles(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade(buy_price=20.0, bought_shares=100, sell_order_id="S1")
    store.save_trade(trade)
    gateway.add_order("S1", side=OrderSide.SELL, quantity=100, filled_quantity=30, filled_price=21.0)
    gateway.deferred_cancels.add("S1")

    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, ExitPending)
    assert result.skip
    assert trade.sold_shares == 0
    assert trade.sell_order_id == "S1"

    # more shares fill while the cancel is in flight
    gateway.fill("S1", 21.0, quantity=40)
    assert lifecycle.reconcile(make_rule(), trade).skip
    assert trade.sold_shares == 0

    gateway.settle_cancel("S1")
    result = lifecycle.reconcile(make_rule(), trade)

    assert isinstance(result.state, Long)
    assert not result.skip
    assert trade.sold_shares == 40
    assert trade.open_shares == 60
    assert trade.sell_order_id is None


def test_live_buy_remainder_skips_until_settled(tmp_path) -> None:
    lifecycle, gateway, store = _lifecycle(tmp_path)
    trade = make_trade()
    store.save_trade(trade)
    gateway.add_order("B1", quantity=100, filled_quantity=60, filled_price=20.0)
    gateway.deferred_cancels.add("B1")

    result = lifecycle.reconcile(make_rule(), trade)

    assert result.skip
    assert trade.bought_shares == 60
    assert gateway.orders["B1"].status == OrderStatus.PENDING_CANCEL

    gateway.fill("B1", 20.0, quantity=70)
    result = lifecycle.reconcile(make_rule(), trade)
    assert result.skip
    assert trade.bought_shares == 70

    gateway.settle_cancel("B1")
    result = lifecycle.reconcile(make_rule(), trade)
    assert isinstance(result.state, Long)
    assert not result.skip
    saved = store.get_trade("t1")
    assert saved is not None and saved.bought_shares == 70
