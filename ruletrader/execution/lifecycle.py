from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from ruletrader.clock import utc_now
from ruletrader.execution.gateway import Order, OrderGateway
from ruletrader.monitoring.alerts import AlertDispatcher
from ruletrader.storage.models import RuleRecord, TradeRecord
from ruletrader.storage.rule_store import RuleStore
from ruletrader.strategy.pricing import value_from_percentage

LOGGER = logging.getLogger(__name__)


class ReconciliationError(RuntimeError):
    """A rule's trade could not be matched against the broker this tick."""


class OrderNotFound(ReconciliationError):
    pass


class CancelFailed(ReconciliationError):
    pass


class PartialCancelFailed(CancelFailed):
    pass


@dataclass(frozen=True, slots=True)
class Flat:
    pass


@dataclass(frozen=True, slots=True)
class LongPending:
    trade: TradeRecord


@dataclass(frozen=True, slots=True)
class Long:
    trade: TradeRecord


@dataclass(frozen=True, slots=True)
class ExitPending:
    trade: TradeRecord


PositionState = Union[Flat, LongPending, Long, ExitPending]


def position_state(trade: TradeRecord | None) -> PositionState:
    if trade is None or trade.completed:
        return Flat()
    if trade.sell_order_id:
        return ExitPending(trade)
    if trade.buy_order_id and trade.buy_price is None:
        return LongPending(trade)
    return Long(trade)


@dataclass(frozen=True, slots=True)
class Reconciliation:
    state: PositionState
    skip: bool = False

    @property
    def trade(self) -> TradeRecord | None:
        if isinstance(self.state, Flat):
            return None
        return self.state.trade

    @property
    def holds_position(self) -> bool:
        return not isinstance(self.state, Flat)

    @property
    def last_order_is_buy(self) -> bool:
        return self.holds_position

    @property
    def last_order_is_sell(self) -> bool:
        return not self.holds_position


class TradeLifecycle:
    """
    Brings a rule's trade in line with the broker before any decision is made.

    Every outstanding order is either folded in as a fill or cancelled. The
    result is Flat or Long once the broker has settled; while a cancel is still
    settling the pending state is returned with skip set.
    """

    def __init__(self, *, gateway: OrderGateway, store: RuleStore, alerts: AlertDispatcher | None = None):
        self.gateway = gateway
        self.store = store
        self.alerts = alerts

    def reconcile(self, rule: RuleRecord, trade: TradeRecord | None) -> Reconciliation:
        state = position_state(trade)
        if isinstance(state, Flat):
            return Reconciliation(state)

        trade = state.trade
        last_order_id = trade.sell_order_id or trade.buy_order_id
        if not last_order_id:
            raise ReconciliationError(f"Trade {trade.trade_id} has neither a sell nor a buy order id")

        order = self.gateway.get_order(last_order_id)
        if order is None:
            raise OrderNotFound(f"Order {last_order_id} not found for trade {trade.trade_id}")

        is_sell_leg = last_order_id == trade.sell_order_id
        cancel_requested = False
        if not order.has_fill:
            order = self._cancel_and_refresh(rule, order, CancelFailed)
            cancel_requested = True
            if not order.has_fill:
                if not order.is_terminal:
                    # Cancel accepted but not settled; the order can still fill.
                    LOGGER.info("Cancel of %s still settling for rule %s", order.order_id, rule.rule_id)
                    return Reconciliation(state, skip=True)
                return self._rollback(trade, is_sell_leg)

        if is_sell_leg:
            return self._apply_sell_fill(rule, trade, order, cancel_requested)
        return self._apply_buy_fill(rule, trade, order, cancel_requested)

    def _apply_buy_fill(
        self,
        rule: RuleRecord,
        trade: TradeRecord,
        order: Order,
        cancel_requested: bool,
    ) -> Reconciliation:
        if trade.buy_price is None:
            price = order.filled_price if order.filled_price is not None else order.limit_price
            if price is None:
                raise ReconciliationError(f"Buy order {order.order_id} filled without a price")
            trade.buy_price = price
            trade.buy_date = order.updated_at or utc_now()
            trade.bought_shares = order.filled_quantity
            trade.risk_value = value_from_percentage(price, rule.limits.risk_percentage, "risk")
            if rule.limits.profit_percentage:
                trade.profit_value = value_from_percentage(price, rule.limits.profit_percentage, "profit")
            LOGGER.info(
                "Buy filled rule=%s symbol=%s shares=%s/%s price=%.4f",
                rule.rule_id,
                rule.symbol,
                order.filled_quantity,
                order.quantity,
                price,
            )
            if not order.is_terminal and not cancel_requested:
                order = self._cancel_and_refresh(rule, order, PartialCancelFailed)
                cancel_requested = True
                trade.bought_shares = max(trade.bought_shares, order.filled_quantity)
            self.store.save_trade(trade)
        elif order.filled_quantity > trade.bought_shares:
            LOGGER.warning(
                "Late buy fill rule=%s order=%s recorded=%s broker=%s",
                rule.rule_id,
                order.order_id,
                trade.bought_shares,
                order.filled_quantity,
            )
            trade.bought_shares = order.filled_quantity
            self.store.save_trade(trade)

        if not order.is_terminal:
            # Remainder cancel has not settled yet; no sell until the buy is final.
            if not cancel_requested and not self._cancel(rule, order):
                LOGGER.warning("Cancel of buy remainder %s still pending", order.order_id)
            return Reconciliation(Long(trade), skip=True)
        return Reconciliation(Long(trade))

    def _apply_sell_fill(
        self,
        rule: RuleRecord,
        trade: TradeRecord,
        order: Order,
        cancel_requested: bool,
    ) -> Reconciliation:
        total_sold = trade.sold_shares + order.filled_quantity
        if total_sold < trade.bought_shares:
            if not order.is_terminal:
                if not cancel_requested:
                    order = self._cancel_and_refresh(rule, order, PartialCancelFailed)
                if not order.is_terminal:
                    # Fold only a settled fill so a late fill is never lost.
                    return Reconciliation(ExitPending(trade), skip=True)
                total_sold = trade.sold_shares + order.filled_quantity

        if total_sold < trade.bought_shares:
            LOGGER.info(
                "Partial sell rule=%s symbol=%s sold=%s/%s",
                rule.rule_id,
                rule.symbol,
                total_sold,
                trade.bought_shares,
            )
            trade.sold_shares = total_sold
            trade.sell_order_id = None
            trade.sell_price = None
            trade.sell_date = None
            self.store.save_trade(trade)
            return Reconciliation(Long(trade))

        trade.sold_shares = total_sold
        trade.sell_price = order.filled_price if order.filled_price is not None else order.limit_price
        trade.sell_date = order.updated_at or utc_now()
        trade.completed = True
        self.store.save_trade(trade)
        LOGGER.info(
            "Trade completed rule=%s symbol=%s bought=%.4f sold=%s",
            rule.rule_id,
            rule.symbol,
            trade.buy_price or 0.0,
            trade.sell_price,
        )
        if not rule.has_continuation:
            rule.enabled = False
            self.store.save_rule(rule)
            LOGGER.info("Rule %s disabled after its final sell", rule.rule_id)
            return Reconciliation(Flat(), skip=True)
        return Reconciliation(Flat())

    def _rollback(self, trade: TradeRecord, is_sell_leg: bool) -> Reconciliation:
        if is_sell_leg:
            trade.sell_order_id = None
            trade.sell_price = None
            trade.sell_date = None
            trade.completed = False
            self.store.save_trade(trade)
            return Reconciliation(Long(trade))
        self.store.remove_trade(trade)
        return Reconciliation(Flat())

    def _cancel_and_refresh(
        self,
        rule: RuleRecord,
        order: Order,
        error_cls: type[CancelFailed],
    ) -> Order:
        if not self._cancel(rule, order):
            raise error_cls(f"Failed to cancel order {order.order_id} for rule {rule.rule_id}")
        if order.is_terminal:
            return order
        refreshed = self.gateway.get_order(order.order_id)
        return refreshed or order

    def _cancel(self, rule: RuleRecord, order: Order) -> bool:
        if order.is_cancelled or order.is_cancel_pending:
            return True
        if order.is_filled:
            return False
        if not self.gateway.cancel_order(order.order_id):
            return False
        if self.alerts is not None:
            self.alerts.order_cancelled(
                symbol=rule.symbol,
                side=order.side.value,
                name=rule.name,
                price=order.limit_price,
            )
        return True
