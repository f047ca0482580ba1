from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from ruletrader.storage.models import (
    Frequency,
    LimitsConfig,
    RuleRecord,
    StrategyConfig,
    TrailingStopConfig,
)
from ruletrader.strategy.predicates import compile_predicate


class EngineConfig(BaseModel):
    fast_interval_seconds: float = 5.0
    slow_interval_seconds: float = 60.0
    liquidation_window_seconds: float = 30.0
    buy_price_premium: float = 0.0001
    sell_price_discount: float = 0.0001
    price_decimals: int = 2
    time_in_force: str = "gtc"
    max_workers: int = 8
    override_market_close: bool = False
    manual_sell_all: bool = False

    @model_validator(mode="after")
    def validate_values(self) -> "EngineConfig":
        if self.fast_interval_seconds <= 0 or self.slow_interval_seconds <= 0:
            raise ValueError("cadence intervals must be > 0")
        if self.fast_interval_seconds > self.slow_interval_seconds:
            raise ValueError("fast_interval_seconds must be <= slow_interval_seconds")
        if self.liquidation_window_seconds < 0:
            raise ValueError("liquidation_window_seconds must be >= 0")
        if not (0 <= self.buy_price_premium < 0.05):
            raise ValueError("buy_price_premium must be in [0,0.05)")
        if not (0 <= self.sell_price_discount < 0.05):
            raise ValueError("sell_price_discount must be in [0,0.05)")
        if self.price_decimals < 0:
            raise ValueError("price_decimals must be >= 0")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        tif = self.time_in_force.strip().lower()
        if tif not in {"gtc", "day"}:
            raise ValueError("time_in_force must be gtc or day")
        self.time_in_force = tif
        return self


class AlpacaConfig(BaseModel):
    paper_base_url: str = "https://paper-api.alpaca.markets"
    live_base_url: str = "https://api.alpaca.markets"
    data_base_url: str = "https://data.alpaca.markets"
    data_feed: str = "iex"
    timeout_seconds: int = 10
    rate_limit_rps: float = 3.0
    rate_limit_burst: int = 10
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    @model_validator(mode="after")
    def validate_values(self) -> "AlpacaConfig":
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.request_max_attempts <= 0:
            raise ValueError("request_max_attempts must be > 0")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must be <= backoff_max_seconds")
        self.data_feed = self.data_feed.strip().lower() or "iex"
        return self


class MonitoringConfig(BaseModel):
    dashboard_path: str = "runtime_dashboard.json"
    heartbeat_seconds: int = 60
    closed_heartbeat_minutes: int = 30
    alerts_enabled: bool = True
    alert_cooldown_seconds: int = 0
    log_rule_meta: bool = True

    @model_validator(mode="after")
    def validate_values(self) -> "MonitoringConfig":
        if self.heartbeat_seconds <= 0:
            raise ValueError("heartbeat_seconds must be > 0")
        if not (1 <= self.closed_heartbeat_minutes <= 60):
            raise ValueError("closed_heartbeat_minutes must be in [1,60]")
        if self.alert_cooldown_seconds < 0:
            raise ValueError("alert_cooldown_seconds must be >= 0")
        return self


class StorageConfig(BaseModel):
    sqlite_path: str = "ruletrader_state.db"


class AppConfig(BaseModel):
    timezone: str = "America/New_York"
    engine: EngineConfig = Field(default_factory=EngineConfig)
    alpaca: AlpacaConfig = Field(default_factory=AlpacaConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


class TrailingStopDefinition(BaseModel):
    enabled: bool = False
    target_percentage: float = 0.0
    risk_percentage_after_target: float = 0.0

    @model_validator(mode="after")
    def validate_values(self) -> "TrailingStopDefinition":
        if self.enabled and self.target_percentage <= 0:
            raise ValueError("trailing.target_percentage must be > 0 when enabled")
        if self.enabled and self.risk_percentage_after_target <= 0:
            raise ValueError("trailing.risk_percentage_after_target must be > 0 when enabled")
        return self


class RuleDefinition(BaseModel):
    rule_id: str
    name: str
    symbol: str
    exchange: str = "NASDAQ"
    frequency: Frequency = Frequency.ONE_MINUTE
    enabled: bool = True
    number_of_shares: float
    entry: dict[str, Any] | None = None
    exit: dict[str, Any] | None = None
    risk_percentage: float = 1.0
    profit_percentage: float | None = None
    trailing: TrailingStopDefinition = Field(default_factory=TrailingStopDefinition)
    hold_overnight: bool = False
    disable_after_sold: bool = False

    @model_validator(mode="after")
    def validate_rule(self) -> "RuleDefinition":
        self.rule_id = self.rule_id.strip()
        if not self.rule_id:
            raise ValueError("rule_id must not be empty")
        self.symbol = self.symbol.strip().upper()
        self.exchange = self.exchange.strip().upper()
        if not self.symbol:
            raise ValueError("symbol must not be empty")
        if self.number_of_shares <= 0:
            raise ValueError("number_of_shares must be > 0")
        if self.risk_percentage <= 0 or self.risk_percentage >= 100:
            raise ValueError("risk_percentage must be in (0,100)")
        if self.profit_percentage is not None and self.profit_percentage <= 0:
            raise ValueError("profit_percentage must be > 0 when provided")
        if not self.entry and not self.exit:
            raise ValueError(f"rule {self.rule_id} needs an entry or exit query")
        compile_predicate(self.entry)
        compile_predicate(self.exit)
        return self

    def to_record(self, now: datetime | None = None) -> RuleRecord:
        ts = now or datetime.now(timezone.utc)
        return RuleRecord(
            rule_id=self.rule_id,
            name=self.name,
            symbol=self.symbol,
            exchange=self.exchange,
            frequency=self.frequency,
            enabled=self.enabled,
            number_of_shares=float(self.number_of_shares),
            strategy=StrategyConfig(entry=self.entry or None, exit=self.exit or None),
            limits=LimitsConfig(
                risk_percentage=self.risk_percentage,
                profit_percentage=self.profit_percentage,
                trailing=TrailingStopConfig(
                    enabled=self.trailing.enabled,
                    target_percentage=self.trailing.target_percentage,
                    risk_percentage_after_target=self.trailing.risk_percentage_after_target,
                ),
            ),
            hold_overnight=self.hold_overnight,
            disable_after_sold=self.disable_after_sold,
            created_at=ts,
            updated_at=ts,
        )


class RuleFile(BaseModel):
    rules: list[RuleDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_ids(self) -> "RuleFile":
        seen: set[str] = set()
        for rule in self.rules:
            if rule.rule_id in seen:
                raise ValueError(f"duplicate rule_id '{rule.rule_id}'")
            seen.add(rule.rule_id)
        return self


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)


def load_rule_definitions(path: str | Path) -> list[RuleDefinition]:
    rules_path = Path(path)
    with rules_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return RuleFile.model_validate(raw).rules
