from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from ruletrader.clock import parse_timestamp
from ruletrader.data.alpaca_client import AlpacaClient, InsufficientSharesError

LOGGER = logging.getLogger(__name__)


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    PENDING_CANCEL = "PENDING_CANCEL"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


def map_remote_order_status(raw: str | None) -> OrderStatus:
    if raw is None:
        return OrderStatus.PENDING
    status = raw.strip().lower()
    if status == "filled":
        return OrderStatus.FILLED
    if status == "partially_filled":
        return OrderStatus.PARTIALLY_FILLED
    if status == "pending_cancel":
        return OrderStatus.PENDING_CANCEL
    if status in {"canceled", "cancelled", "expired", "rejected", "done_for_day", "replaced", "stopped", "suspended"}:
        return OrderStatus.CANCELLED
    return OrderStatus.PENDING


@dataclass(frozen=True, slots=True)
class Order:
    order_id: str
    client_order_id: str | None
    symbol: str
    side: OrderSide
    status: OrderStatus
    quantity: float
    filled_quantity: float = 0.0
    filled_price: float | None = None
    limit_price: float | None = None
    updated_at: datetime | None = None

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def is_partially_filled(self) -> bool:
        # A cancelled order keeps whatever filled before the cancel landed.
        return self.filled_quantity > 0 and self.status != OrderStatus.FILLED

    @property
    def has_fill(self) -> bool:
        return self.is_filled or self.is_partially_filled

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED

    @property
    def is_cancel_pending(self) -> bool:
        return self.status == OrderStatus.PENDING_CANCEL

    @property
    def is_terminal(self) -> bool:
        return self.status in {OrderStatus.FILLED, OrderStatus.CANCELLED}


@dataclass(frozen=True, slots=True)
class OrderRequest:
    symbol: str
    side: OrderSide
    quantity: float
    limit_price: float
    time_in_force: str
    client_order_id: str


class OrderGateway(Protocol):
    def place_order(self, request: OrderRequest) -> Order:
        ...

    def cancel_order(self, order_id: str) -> bool:
        ...

    def get_order(self, order_id: str) -> Order | None:
        ...

    def get_position_qty(self, symbol: str) -> float:
        ...


def format_quantity(quantity: float) -> str:
    if float(quantity).is_integer():
        return str(int(quantity))
    return f"{quantity:.9f}".rstrip("0").rstrip(".")


def format_price(price: float) -> str:
    return f"{price:.4f}".rstrip("0").rstrip(".")


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def order_from_payload(payload: dict[str, Any]) -> Order:
    filled_price = payload.get("filled_avg_price")
    return Order(
        order_id=str(payload["id"]),
        client_order_id=payload.get("client_order_id"),
        symbol=str(payload.get("symbol") or "").upper(),
        side=OrderSide(str(payload.get("side") or "buy").lower()),
        status=map_remote_order_status(payload.get("status")),
        quantity=_as_float(payload.get("qty")),
        filled_quantity=_as_float(payload.get("filled_qty")),
        filled_price=float(filled_price) if filled_price not in (None, "") else None,
        limit_price=float(payload["limit_price"]) if payload.get("limit_price") not in (None, "") else None,
        updated_at=parse_timestamp(payload.get("filled_at") or payload.get("updated_at")),
    )


class AlpacaOrderGateway:
    def __init__(self, client: AlpacaClient):
        self.client = client

    def place_order(self, request: OrderRequest) -> Order:
        payload = self.client.place_order(
            symbol=request.symbol,
            side=request.side.value,
            qty=format_quantity(request.quantity),
            limit_price=format_price(request.limit_price),
            time_in_force=request.time_in_force,
            client_order_id=request.client_order_id,
        )
        return order_from_payload(payload)

    def cancel_order(self, order_id: str) -> bool:
        return self.client.cancel_order(order_id)

    def get_order(self, order_id: str) -> Order | None:
        payload = self.client.get_order(order_id)
        if not payload:
            return None
        return order_from_payload(payload)

    def get_position_qty(self, symbol: str) -> float:
        payload = self.client.get_position(symbol)
        if not payload:
            return 0.0
        return _as_float(payload.get("qty"))


class DryRunGateway:
    """
    In-memory broker for dry runs: a pending order fills completely at its
    limit price the first time its status is read.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self._positions: dict[str, float] = {}
        self._limit_prices: dict[str, float] = {}

    def place_order(self, request: OrderRequest) -> Order:
        with self._lock:
            held = self._positions.get(request.symbol, 0.0)
            if request.side == OrderSide.SELL and request.quantity > held:
                raise InsufficientSharesError(
                    f"DRY-RUN insufficient qty available for order (requested: {request.quantity}, available: {held})"
                )
            order = Order(
                order_id=f"DRY-{uuid.uuid4().hex[:12]}",
                client_order_id=request.client_order_id,
                symbol=request.symbol,
                side=request.side,
                status=OrderStatus.PENDING,
                quantity=request.quantity,
                limit_price=request.limit_price,
                updated_at=datetime.now(timezone.utc),
            )
            self._orders[order.order_id] = order
            self._limit_prices[order.order_id] = request.limit_price
        LOGGER.info("DRY-RUN: placed %s %s x%s @ %.2f", order.side.value, order.symbol, order.quantity, request.limit_price)
        return order

    def cancel_order(self, order_id: str) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.is_filled:
                return False
            if not order.is_cancelled:
                self._orders[order_id] = replace(order, status=OrderStatus.CANCELLED, updated_at=datetime.now(timezone.utc))
        return True

    def get_order(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != OrderStatus.PENDING:
                return order
            filled = replace(
                order,
                status=OrderStatus.FILLED,
                filled_quantity=order.quantity,
                filled_price=self._limit_prices.get(order_id),
                updated_at=datetime.now(timezone.utc),
            )
            self._orders[order_id] = filled
            delta = filled.quantity if filled.side == OrderSide.BUY else -filled.quantity
            self._positions[filled.symbol] = self._positions.get(filled.symbol, 0.0) + delta
        LOGGER.info("DRY-RUN fill simulated for %s at %.2f", order_id, filled.filled_price or 0.0)
        return filled

    def get_position_qty(self, symbol: str) -> float:
        with self._lock:
            return self._positions.get(symbol, 0.0)
