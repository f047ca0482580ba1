from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol

from ruletrader.clock import utc_now
from ruletrader.data.alpaca_client import AlpacaAPIError
from ruletrader.data.market_data import AccountSnapshot, MarketHours, Quote
from ruletrader.execution.gateway import OrderGateway
from ruletrader.execution.guard import OrderGuard
from ruletrader.execution.lifecycle import ReconciliationError, TradeLifecycle
from ruletrader.execution.orders import OrderExecutor
from ruletrader.monitoring.alerts import AlertDispatcher
from ruletrader.storage.models import Frequency, RuleRecord, TradeRecord
from ruletrader.storage.rule_store import RuleStore
from ruletrader.strategy.decision import DecisionSettings, decide
from ruletrader.strategy.predicates import PredicateCache, StrategyConfigError
from ruletrader.strategy.pricing import QuoteNotFound, build_context

LOGGER = logging.getLogger(__name__)


class MarketFeed(Protocol):
    def get_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        ...

    def get_market_hours(self) -> MarketHours:
        ...

    def get_account(self) -> AccountSnapshot:
        ...


@dataclass(slots=True)
class TickSummary:
    frequency: Frequency
    started_at: datetime
    skipped_reason: str | None = None
    rules_processed: int = 0
    orders_placed: int = 0
    trades_updated: int = 0
    failures: int = 0


@dataclass(slots=True)
class RuleStatus:
    rule_id: str
    symbol: str
    position: str = "Flat"
    last_price: float | None = None
    last_action: str | None = None
    last_error: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class RuleOutcome:
    position: str
    price: float | None = None
    action: str | None = None
    order_placed: bool = False
    trade_updated: bool = False


class RuleEngine:
    def __init__(
        self,
        *,
        store: RuleStore,
        market: MarketFeed,
        gateway: OrderGateway,
        guard: OrderGuard,
        settings: DecisionSettings,
        time_in_force: str = "gtc",
        max_workers: int = 8,
        log_rule_meta: bool = True,
        alerts: AlertDispatcher | None = None,
    ):
        self.store = store
        self.market = market
        self.guard = guard
        self.settings = settings
        self.max_workers = max_workers
        self.log_rule_meta = log_rule_meta
        self.alerts = alerts
        self.predicates = PredicateCache()
        self.lifecycle = TradeLifecycle(gateway=gateway, store=store, alerts=alerts)
        self.executor = OrderExecutor(
            gateway=gateway,
            store=store,
            guard=guard,
            settings=settings,
            time_in_force=time_in_force,
            alerts=alerts,
        )
        self._lock = threading.Lock()
        self._rules: dict[Frequency, list[RuleRecord]] = {frequency: [] for frequency in Frequency}
        self._statuses: dict[str, RuleStatus] = {}
        self.market_hours: MarketHours | None = None
        self.account: AccountSnapshot | None = None

    def refresh_market_hours(self) -> MarketHours:
        hours = self.market.get_market_hours()
        with self._lock:
            self.market_hours = hours
        return hours

    def refresh_account(self) -> AccountSnapshot:
        account = self.market.get_account()
        with self._lock:
            self.account = account
        return account

    def refresh_rules(self, frequency: Frequency) -> list[RuleRecord]:
        rules = self.store.get_active_rules(frequency)
        with self._lock:
            self._rules[frequency] = rules
        LOGGER.debug("Loaded %d active %s rules", len(rules), frequency.value)
        return rules

    def refresh_state(self, frequency: Frequency) -> None:
        self.refresh_market_hours()
        self.refresh_account()
        self.refresh_rules(frequency)

    def rules_for(self, frequency: Frequency) -> list[RuleRecord]:
        with self._lock:
            return list(self._rules[frequency])

    def process_feeds(self, frequency: Frequency) -> TickSummary:
        summary = TickSummary(frequency=frequency, started_at=utc_now())
        with self._lock:
            hours = self.market_hours
            account = self.account
        if hours is None:
            hours = self.refresh_market_hours()
        if hours.is_closed_now and not self.settings.override_market_close:
            summary.skipped_reason = "market closed"
            return summary

        rules = [
            rule
            for rule in self.rules_for(frequency)
            if rule.enabled and not self.guard.is_pending(rule.rule_id)
        ]
        if not rules:
            summary.skipped_reason = "no eligible rules"
            return summary

        quotes = self.market.get_quotes(sorted({rule.symbol for rule in rules}))
        trades = {trade.rule_id: trade for trade in self.store.get_incomplete_trades()}

        workers = max(1, min(self.max_workers, len(rules)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"rules-{frequency.value}") as pool:
            futures = {
                pool.submit(self.process_rule, rule, trades.get(rule.rule_id), quotes, hours, account): rule
                for rule in rules
            }
            for future in as_completed(futures):
                rule = futures[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    summary.failures += 1
                    self._record_failure(rule, exc)
                    continue
                summary.rules_processed += 1
                summary.orders_placed += int(outcome.order_placed)
                summary.trades_updated += int(outcome.trade_updated)
                self._record_outcome(rule, outcome)

        LOGGER.info(
            "Tick %s rules=%d orders=%d failures=%d",
            frequency.value,
            summary.rules_processed,
            summary.orders_placed,
            summary.failures,
        )
        return summary

    def process_rule(
        self,
        rule: RuleRecord,
        trade: TradeRecord | None,
        quotes: dict[str, Quote],
        hours: MarketHours,
        account: AccountSnapshot | None,
    ) -> RuleOutcome:
        reconciliation = self.lifecycle.reconcile(rule, trade)
        position = type(reconciliation.state).__name__
        if reconciliation.skip or not rule.enabled:
            return RuleOutcome(position=position)

        trade = reconciliation.trade
        context = build_context(
            rule,
            trade,
            holds_position=reconciliation.holds_position,
            quotes=quotes,
            account=account,
            market_hours=hours,
            predicates=self.predicates,
        )
        if self.log_rule_meta:
            LOGGER.debug("META rule=%s %s", rule.rule_id, context.meta_line())

        decision = decide(context, rule, trade, self.settings)
        if decision.trade_updated and trade is not None:
            trade.updated_at = utc_now()
            self.store.save_trade(trade)
            LOGGER.info("Trailing stop raised rule=%s risk_value=%.4f", rule.rule_id, trade.risk_value)

        outcome = RuleOutcome(position=position, price=context.price, trade_updated=decision.trade_updated)
        if decision.side is None:
            return outcome

        order = self.executor.place_order(rule, decision.side, context.price, context.quantity, trade, decision.reason)
        outcome.action = f"{decision.side.value}: {decision.reason}"
        outcome.order_placed = order is not None
        return outcome

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            hours = self.market_hours
            statuses = [asdict(status) for status in self._statuses.values()]
            rule_count = sum(len(rules) for rules in self._rules.values())
        return {
            "market_open": hours is not None and not hours.is_closed_now,
            "seconds_to_close": hours.seconds_left_to_close if hours is not None else None,
            "active_rules": rule_count,
            "orders_in_flight": sorted(self.guard.pending_rule_ids()),
            "rules": statuses,
        }

    def _status(self, rule: RuleRecord) -> RuleStatus:
        status = self._statuses.get(rule.rule_id)
        if status is None:
            status = RuleStatus(rule_id=rule.rule_id, symbol=rule.symbol)
            self._statuses[rule.rule_id] = status
        return status

    def _record_outcome(self, rule: RuleRecord, outcome: RuleOutcome) -> None:
        with self._lock:
            status = self._status(rule)
            status.position = outcome.position
            status.last_price = outcome.price
            if outcome.action is not None:
                status.last_action = outcome.action
            status.last_error = None
            status.updated_at = utc_now().isoformat()

    def _record_failure(self, rule: RuleRecord, exc: Exception) -> None:
        if isinstance(exc, (StrategyConfigError, QuoteNotFound)):
            LOGGER.error("Rule %s misconfigured, skipped: %s", rule.rule_id, exc)
        elif isinstance(exc, ReconciliationError):
            LOGGER.error("Rule %s reconciliation failed: %s", rule.rule_id, exc)
        elif isinstance(exc, AlpacaAPIError):
            LOGGER.error("Rule %s Alpaca API error: %s", rule.rule_id, exc)
        else:
            LOGGER.error("Unhandled error for rule %s", rule.rule_id, exc_info=exc)
        if self.alerts is not None:
            self.alerts.error(f"{rule.symbol} ({rule.name}): {type(exc).__name__}: {exc}")
        with self._lock:
            status = self._status(rule)
            status.last_error = f"{type(exc).__name__}: {exc}"
            status.updated_at = utc_now().isoformat()
