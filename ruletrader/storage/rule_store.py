from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterable

from ruletrader.storage.models import (
    Frequency,
    LimitsConfig,
    RuleRecord,
    StrategyConfig,
    TradeRecord,
    TrailingStopConfig,
)


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _dump_query(query: dict | None) -> str | None:
    if not query:
        return None
    return json.dumps(query, sort_keys=True)


def _load_query(raw: str | None) -> dict | None:
    if not raw:
        return None
    return json.loads(raw)


class RuleStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self.lock:
            return self.conn.execute(sql, params).fetchone()

    def get_active_rules(self, frequency: Frequency) -> list[RuleRecord]:
        rows = self._fetchall(
            "SELECT * FROM rules WHERE frequency = ? AND enabled = 1 ORDER BY rule_id ASC",
            (frequency.value,),
        )
        return [self._row_to_rule(row) for row in rows]

    def get_all_rules(self) -> list[RuleRecord]:
        rows = self._fetchall("SELECT * FROM rules ORDER BY rule_id ASC")
        return [self._row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: str) -> RuleRecord | None:
        row = self._fetchone("SELECT * FROM rules WHERE rule_id = ?", (rule_id,))
        if row is None:
            return None
        return self._row_to_rule(row)

    def save_rule(self, rule: RuleRecord) -> None:
        now = datetime.now(timezone.utc)
        rule.created_at = rule.created_at or now
        rule.updated_at = now
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO rules (
                    rule_id, name, symbol, exchange, frequency, enabled, number_of_shares,
                    strategy_entry, strategy_exit, risk_percentage, profit_percentage,
                    trailing_enabled, trailing_target_percentage, trailing_risk_after_target,
                    hold_overnight, disable_after_sold, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(rule_id) DO UPDATE SET
                    name=excluded.name,
                    symbol=excluded.symbol,
                    exchange=excluded.exchange,
                    frequency=excluded.frequency,
                    enabled=excluded.enabled,
                    number_of_shares=excluded.number_of_shares,
                    strategy_entry=excluded.strategy_entry,
                    strategy_exit=excluded.strategy_exit,
                    risk_percentage=excluded.risk_percentage,
                    profit_percentage=excluded.profit_percentage,
                    trailing_enabled=excluded.trailing_enabled,
                    trailing_target_percentage=excluded.trailing_target_percentage,
                    trailing_risk_after_target=excluded.trailing_risk_after_target,
                    hold_overnight=excluded.hold_overnight,
                    disable_after_sold=excluded.disable_after_sold,
                    updated_at=excluded.updated_at
                """,
                (
                    rule.rule_id,
                    rule.name,
                    rule.symbol,
                    rule.exchange,
                    rule.frequency.value,
                    int(rule.enabled),
                    rule.number_of_shares,
                    _dump_query(rule.strategy.entry),
                    _dump_query(rule.strategy.exit),
                    rule.limits.risk_percentage,
                    rule.limits.profit_percentage,
                    int(rule.limits.trailing.enabled),
                    rule.limits.trailing.target_percentage,
                    rule.limits.trailing.risk_percentage_after_target,
                    int(rule.hold_overnight),
                    int(rule.disable_after_sold),
                    _to_iso(rule.created_at),
                    _to_iso(rule.updated_at),
                ),
            )
            self.conn.commit()

    def upsert_rules(self, rules: Iterable[RuleRecord]) -> int:
        count = 0
        for rule in rules:
            self.save_rule(rule)
            count += 1
        return count

    def get_incomplete_trades(self) -> list[TradeRecord]:
        rows = self._fetchall("SELECT * FROM trades WHERE completed = 0 ORDER BY created_at ASC")
        return [self._row_to_trade(row) for row in rows]

    def get_trade(self, trade_id: str) -> TradeRecord | None:
        row = self._fetchone("SELECT * FROM trades WHERE trade_id = ?", (trade_id,))
        if row is None:
            return None
        return self._row_to_trade(row)

    def get_trades_for_rule(self, rule_id: str) -> list[TradeRecord]:
        rows = self._fetchall(
            "SELECT * FROM trades WHERE rule_id = ? ORDER BY created_at ASC",
            (rule_id,),
        )
        return [self._row_to_trade(row) for row in rows]

    def save_trade(self, trade: TradeRecord) -> None:
        now = datetime.now(timezone.utc)
        trade.created_at = trade.created_at or now
        trade.updated_at = now
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO trades (
                    trade_id, rule_id, buy_order_id, sell_order_id, buy_price, buy_date,
                    sell_price, sell_date, bought_shares, sold_shares, risk_value, profit_value,
                    target_reached, completed, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(trade_id) DO UPDATE SET
                    buy_order_id=excluded.buy_order_id,
                    sell_order_id=excluded.sell_order_id,
                    buy_price=excluded.buy_price,
                    buy_date=excluded.buy_date,
                    sell_price=excluded.sell_price,
                    sell_date=excluded.sell_date,
                    bought_shares=excluded.bought_shares,
                    sold_shares=excluded.sold_shares,
                    risk_value=excluded.risk_value,
                    profit_value=excluded.profit_value,
                    target_reached=excluded.target_reached,
                    completed=excluded.completed,
                    updated_at=excluded.updated_at
                """,
                (
                    trade.trade_id,
                    trade.rule_id,
                    trade.buy_order_id,
                    trade.sell_order_id,
                    trade.buy_price,
                    _to_iso(trade.buy_date),
                    trade.sell_price,
                    _to_iso(trade.sell_date),
                    trade.bought_shares,
                    trade.sold_shares,
                    trade.risk_value,
                    trade.profit_value,
                    int(trade.target_reached),
                    int(trade.completed),
                    _to_iso(trade.created_at),
                    _to_iso(trade.updated_at),
                ),
            )
            self.conn.commit()

    def remove_trade(self, trade: TradeRecord) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM trades WHERE trade_id = ?", (trade.trade_id,))
            self.conn.commit()

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> RuleRecord:
        return RuleRecord(
            rule_id=row["rule_id"],
            name=row["name"],
            symbol=row["symbol"],
            exchange=row["exchange"],
            frequency=Frequency(row["frequency"]),
            enabled=bool(row["enabled"]),
            number_of_shares=float(row["number_of_shares"]),
            strategy=StrategyConfig(
                entry=_load_query(row["strategy_entry"]),
                exit=_load_query(row["strategy_exit"]),
            ),
            limits=LimitsConfig(
                risk_percentage=float(row["risk_percentage"]),
                profit_percentage=float(row["profit_percentage"]) if row["profit_percentage"] is not None else None,
                trailing=TrailingStopConfig(
                    enabled=bool(row["trailing_enabled"]),
                    target_percentage=float(row["trailing_target_percentage"]),
                    risk_percentage_after_target=float(row["trailing_risk_after_target"]),
                ),
            ),
            hold_overnight=bool(row["hold_overnight"]),
            disable_after_sold=bool(row["disable_after_sold"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> TradeRecord:
        return TradeRecord(
            trade_id=row["trade_id"],
            rule_id=row["rule_id"],
            buy_order_id=row["buy_order_id"],
            sell_order_id=row["sell_order_id"],
            buy_price=float(row["buy_price"]) if row["buy_price"] is not None else None,
            buy_date=_from_iso(row["buy_date"]),
            sell_price=float(row["sell_price"]) if row["sell_price"] is not None else None,
            sell_date=_from_iso(row["sell_date"]),
            bought_shares=float(row["bought_shares"]),
            sold_shares=float(row["sold_shares"]),
            risk_value=float(row["risk_value"]),
            profit_value=float(row["profit_value"]) if row["profit_value"] is not None else None,
            target_reached=bool(row["target_reached"]),
            completed=bool(row["completed"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )
