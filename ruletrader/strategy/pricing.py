from __future__ import annotations

from dataclasses import dataclass

from ruletrader.data.market_data import AccountSnapshot, MarketHours, Quote
from ruletrader.storage.models import RuleRecord, TradeRecord
from ruletrader.strategy.predicates import Metadata, NoStrategy, PredicateCache


class QuoteNotFound(LookupError):
    """No quote came back for a rule's symbol in this tick."""


def value_from_percentage(price: float, percentage: float, kind: str) -> float:
    offset = price * percentage / 100.0
    if kind == "risk":
        return price - offset
    if kind == "profit":
        return price + offset
    raise ValueError(f"Unsupported percentage kind '{kind}'")


@dataclass(slots=True)
class DecisionContext:
    rule_id: str
    symbol: str
    price: float
    quantity: float
    risk_value: float
    profit_value: float | None
    risk_reached: bool
    profit_reached: bool
    seconds_to_close: float
    holds_position: bool
    entry_signal: bool
    exit_signal: bool
    metadata: Metadata

    def meta_line(self) -> str:
        profit = f"{self.profit_value:.4f}" if self.profit_value is not None else "-"
        return (
            f"{self.symbol} price={self.price:.4f} qty={self.quantity:g} holding={self.holds_position} "
            f"entry={self.entry_signal} exit={self.exit_signal} risk={self.risk_value:.4f} "
            f"risk_reached={self.risk_reached} profit={profit} profit_reached={self.profit_reached} "
            f"close_in={self.seconds_to_close:.0f}s"
        )


def order_quantity(rule: RuleRecord, trade: TradeRecord | None) -> float:
    if trade is not None and trade.sold_shares > 0:
        return trade.open_shares
    if trade is not None and trade.bought_shares > 0:
        return trade.bought_shares
    return rule.number_of_shares


def build_metadata(rule: RuleRecord, quote: Quote, account: AccountSnapshot | None) -> Metadata:
    account = account or AccountSnapshot()
    return Metadata(
        symbol=rule.symbol,
        exchange=rule.exchange,
        number_of_shares=rule.number_of_shares,
        risk_percentage=rule.limits.risk_percentage,
        profit_percentage=rule.limits.profit_percentage,
        hold_overnight=rule.hold_overnight,
        cash=account.cash,
        buying_power=account.buying_power,
        equity=account.equity,
        portfolio_value=account.portfolio_value,
        daytrade_count=account.daytrade_count,
        price=quote.price,
        open=quote.open,
        high=quote.high,
        low=quote.low,
        volume=quote.volume,
        prev_close=quote.prev_close,
        change=quote.change,
        change_percent=quote.change_percent,
    )


def build_context(
    rule: RuleRecord,
    trade: TradeRecord | None,
    *,
    holds_position: bool,
    quotes: dict[str, Quote],
    account: AccountSnapshot | None,
    market_hours: MarketHours,
    predicates: PredicateCache,
) -> DecisionContext:
    quote = quotes.get(rule.symbol)
    if quote is None:
        raise QuoteNotFound(f"No quote for {rule.exchange}:{rule.symbol} (rule {rule.rule_id})")

    entry = predicates.get(f"{rule.rule_id}:entry", rule.strategy.entry)
    exit_ = predicates.get(f"{rule.rule_id}:exit", rule.strategy.exit)
    if entry is None and exit_ is None:
        raise NoStrategy(f"No strategy found for rule {rule.rule_id}")

    price = quote.price
    metadata = build_metadata(rule, quote, account)
    risk_value = trade.risk_value if trade is not None else 0.0
    profit_value = trade.profit_value if trade is not None else None

    return DecisionContext(
        rule_id=rule.rule_id,
        symbol=rule.symbol,
        price=price,
        quantity=order_quantity(rule, trade),
        risk_value=risk_value,
        profit_value=profit_value,
        risk_reached=risk_value > price,
        profit_reached=profit_value is not None and profit_value < price,
        seconds_to_close=market_hours.seconds_left_to_close,
        holds_position=holds_position,
        entry_signal=entry is not None and not holds_position and entry.test(metadata),
        exit_signal=exit_ is not None and holds_position and exit_.test(metadata),
        metadata=metadata,
    )
