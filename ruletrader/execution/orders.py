from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from ruletrader.data.alpaca_client import AlpacaAPIError, AssetNotTradableError, InsufficientSharesError
from ruletrader.execution.gateway import Order, OrderGateway, OrderRequest, OrderSide
from ruletrader.execution.guard import OrderGuard
from ruletrader.monitoring.alerts import AlertDispatcher
from ruletrader.storage.models import RuleRecord, TradeRecord
from ruletrader.storage.rule_store import RuleStore
from ruletrader.strategy.decision import DecisionSettings, limit_price

LOGGER = logging.getLogger(__name__)

NOT_CAPTURED_ORDER_ID = "not-captured"


class OrderExecutor:
    def __init__(
        self,
        *,
        gateway: OrderGateway,
        store: RuleStore,
        guard: OrderGuard,
        settings: DecisionSettings,
        time_in_force: str = "gtc",
        alerts: AlertDispatcher | None = None,
    ):
        self.gateway = gateway
        self.store = store
        self.guard = guard
        self.settings = settings
        self.time_in_force = time_in_force
        self.alerts = alerts

    def place_order(
        self,
        rule: RuleRecord,
        side: OrderSide,
        price: float,
        quantity: float,
        trade: TradeRecord | None,
        reason: str | None = None,
    ) -> Order | None:
        with self.guard.hold(rule.rule_id) as acquired:
            if not acquired:
                LOGGER.info("Order already in flight for rule %s, skipping %s", rule.rule_id, side.value)
                return None
            return self._submit(rule, side, price, quantity, trade, reason)

    def _submit(
        self,
        rule: RuleRecord,
        side: OrderSide,
        price: float,
        quantity: float,
        trade: TradeRecord | None,
        reason: str | None,
    ) -> Order | None:
        if quantity <= 0:
            LOGGER.warning("Refusing %s for rule %s with quantity %s", side.value, rule.rule_id, quantity)
            return None
        if side == OrderSide.SELL and trade is None:
            LOGGER.warning("Refusing sell for rule %s without an open trade", rule.rule_id)
            return None

        request = OrderRequest(
            symbol=rule.symbol,
            side=side,
            quantity=quantity,
            limit_price=limit_price(price, side, self.settings),
            time_in_force=self.time_in_force,
            client_order_id=f"{rule.rule_id}-{uuid.uuid4().hex[:16]}",
        )
        name = f"{rule.name}({reason})" if reason else rule.name

        try:
            order = self.gateway.place_order(request)
        except InsufficientSharesError as exc:
            self._handle_insufficient_shares(rule, trade, exc)
            return None
        except AssetNotTradableError as exc:
            LOGGER.error("Asset %s not tradable, disabling rule %s: %s", rule.symbol, rule.rule_id, exc)
            rule.enabled = False
            self.store.save_rule(rule)
            self._alert_error(f"{rule.symbol} not tradable, rule {rule.name} disabled: {exc}")
            return None
        except AlpacaAPIError as exc:
            LOGGER.error("Order %s %s for rule %s failed: %s", side.value, rule.symbol, rule.rule_id, exc)
            self._alert_error(f"{side.value} {rule.symbol} ({rule.name}) failed: {exc}")
            return None

        now = datetime.now(timezone.utc)
        if trade is None:
            # only a buy gets here without a trade
            trade = TradeRecord(
                trade_id=uuid.uuid4().hex,
                rule_id=rule.rule_id,
                created_at=now,
            )
        if side == OrderSide.BUY:
            trade.buy_order_id = order.order_id
        else:
            trade.sell_order_id = order.order_id
        trade.updated_at = now
        self.store.save_trade(trade)

        LOGGER.info(
            "Placed %s %s x%s @ %.2f rule=%s order=%s",
            side.value,
            rule.symbol,
            quantity,
            request.limit_price,
            rule.rule_id,
            order.order_id,
        )
        if self.alerts is not None:
            self.alerts.order_placed(symbol=rule.symbol, side=side.value, name=name, price=price, at=now)
        return order

    def _handle_insufficient_shares(
        self,
        rule: RuleRecord,
        trade: TradeRecord | None,
        exc: InsufficientSharesError,
    ) -> None:
        held = self.gateway.get_position_qty(rule.symbol)
        if trade is None or held > 0:
            LOGGER.error(
                "Sell rejected for rule %s (%s held at broker): %s",
                rule.rule_id,
                held,
                exc,
            )
            self._alert_error(f"Sell {rule.symbol} ({rule.name}) rejected: {exc}")
            return

        # Shares already left the account outside this engine; close the trade without a price.
        LOGGER.warning("No %s position at broker, closing trade %s uncaptured", rule.symbol, trade.trade_id)
        trade.sell_order_id = NOT_CAPTURED_ORDER_ID
        trade.sell_price = None
        trade.sell_date = None
        trade.completed = True
        trade.updated_at = datetime.now(timezone.utc)
        self.store.save_trade(trade)
        if not rule.has_continuation:
            rule.enabled = False
            self.store.save_rule(rule)
            LOGGER.info("Rule %s disabled after uncaptured sell", rule.rule_id)

    def _alert_error(self, message: str) -> None:
        if self.alerts is not None:
            self.alerts.error(message)
