from __future__ import annotations

import argparse
import logging
import os
import signal
from pathlib import Path

from dotenv import load_dotenv

from ruletrader.config import AppConfig, load_config, load_rule_definitions
from ruletrader.data.alpaca_client import AlpacaAPIError, AlpacaClient
from ruletrader.data.market_data import MarketDataService
from ruletrader.execution.gateway import AlpacaOrderGateway, DryRunGateway, OrderGateway
from ruletrader.execution.guard import OrderGuard
from ruletrader.monitoring.alerts import AlertConfig, AlertDispatcher
from ruletrader.monitoring.dashboard import DashboardWriter
from ruletrader.runtime.engine import RuleEngine
from ruletrader.runtime.scheduler import EngineScheduler
from ruletrader.storage.db import get_connection, init_db
from ruletrader.storage.rule_store import RuleStore
from ruletrader.strategy.decision import DecisionSettings

LOGGER = logging.getLogger("ruletrader")

MODES = ("dry", "paper", "live")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rule-driven Alpaca trading engine")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", action="store_true", help="Simulated fills, no orders reach the broker (default)")
    mode_group.add_argument("--paper", action="store_true", help="Place orders on the Alpaca paper account")
    mode_group.add_argument("--live", action="store_true", help="Place orders on the Alpaca live account")

    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--import-rules", default=None, metavar="FILE", help="Load rule definitions from YAML into the store and exit")
    parser.add_argument("--once", action="store_true", help="Run a single pass of each cadence and exit")
    return parser.parse_args(argv)


def resolve_mode(args: argparse.Namespace) -> str:
    if args.live:
        return "live"
    if args.paper:
        return "paper"
    return "dry"


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def resolve_db_path(root: Path, *, mode: str, default_path: str = "ruletrader_state.db") -> str:
    raw_path = (os.getenv("SQLITE_PATH") or default_path).strip()
    if "{mode}" in raw_path:
        db_path = raw_path.replace("{mode}", mode)
    else:
        base = Path(raw_path)
        suffix = base.suffix or ".db"
        db_path = str(base.with_name(f"{base.stem}_{mode}{suffix}"))
    path = Path(db_path)
    if not path.is_absolute():
        path = root / path
    return str(path)


def build_client(config: AppConfig, mode: str) -> AlpacaClient:
    api_key = os.getenv("APCA_API_KEY_ID")
    api_secret = os.getenv("APCA_API_SECRET_KEY")
    if not (api_key and api_secret):
        raise RuntimeError("APCA_API_KEY_ID and APCA_API_SECRET_KEY are required in .env")
    default_base = config.alpaca.live_base_url if mode == "live" else config.alpaca.paper_base_url
    return AlpacaClient(
        base_url=os.getenv("APCA_API_BASE_URL", default_base),
        data_url=os.getenv("APCA_API_DATA_URL", config.alpaca.data_base_url),
        api_key=api_key,
        api_secret=api_secret,
        timeout_seconds=config.alpaca.timeout_seconds,
        data_feed=config.alpaca.data_feed,
        rate_limit_rps=config.alpaca.rate_limit_rps,
        rate_limit_burst=config.alpaca.rate_limit_burst,
        request_max_attempts=config.alpaca.request_max_attempts,
        backoff_base_seconds=config.alpaca.backoff_base_seconds,
        backoff_max_seconds=config.alpaca.backoff_max_seconds,
    )


def build_gateway(client: AlpacaClient, mode: str) -> OrderGateway:
    if mode == "dry":
        return DryRunGateway()
    return AlpacaOrderGateway(client)


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(
        AlertConfig(
            enabled=config.monitoring.alerts_enabled,
            slack_webhook=os.getenv("SLACK_WEBHOOK_URL"),
            slack_error_webhook=os.getenv("SLACK_ERROR_WEBHOOK_URL"),
            discord_webhook=os.getenv("DISCORD_WEBHOOK_URL"),
            cooldown_seconds=config.monitoring.alert_cooldown_seconds,
            timezone=config.timezone,
        )
    )


def import_rules(path: Path, store: RuleStore) -> int:
    definitions = load_rule_definitions(path)
    count = store.upsert_rules(definition.to_record() for definition in definitions)
    stored = store.get_all_rules()
    LOGGER.info(
        "Imported %d rule(s) from %s | store now holds %d rule(s), %d enabled",
        count,
        path,
        len(stored),
        sum(1 for rule in stored if rule.enabled),
    )
    return count


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    mode = resolve_mode(args)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    config = load_config(config_path)
    config.engine.manual_sell_all = env_flag("MANUAL_SELL_ALL", config.engine.manual_sell_all)

    db_path = resolve_db_path(root, mode=mode, default_path=config.storage.sqlite_path)
    conn = get_connection(db_path)
    init_db(conn)
    store = RuleStore(conn)
    LOGGER.info("SQLite state path: %s", db_path)

    if args.import_rules:
        import_rules(Path(args.import_rules), store)
        return

    client = build_client(config, mode)
    alerts = build_alert_dispatcher(config)
    engine = RuleEngine(
        store=store,
        market=MarketDataService(client),
        gateway=build_gateway(client, mode),
        guard=OrderGuard(),
        settings=DecisionSettings.from_config(config.engine),
        time_in_force=config.engine.time_in_force,
        max_workers=config.engine.max_workers,
        log_rule_meta=config.monitoring.log_rule_meta,
        alerts=alerts,
    )
    scheduler = EngineScheduler(
        engine,
        fast_interval_seconds=config.engine.fast_interval_seconds,
        slow_interval_seconds=config.engine.slow_interval_seconds,
        heartbeat_seconds=config.monitoring.heartbeat_seconds,
        closed_heartbeat_minutes=config.monitoring.closed_heartbeat_minutes,
        timezone=config.timezone,
        alerts=alerts,
        dashboard=DashboardWriter(os.getenv("DASHBOARD_PATH", config.monitoring.dashboard_path), mode=mode),
        metrics=client.metrics_snapshot,
    )

    LOGGER.info(
        "Starting engine | mode=%s | manual_sell_all=%s | timezone=%s",
        mode,
        config.engine.manual_sell_all,
        config.timezone,
    )
    try:
        if args.once:
            scheduler.run_once()
            return

        def _stop(signum: int, _frame: object) -> None:
            LOGGER.info("Received signal %s, shutting down.", signum)
            scheduler.stop_event.set()

        signal.signal(signal.SIGINT, _stop)
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, _stop)

        try:
            scheduler.start()
        except AlpacaAPIError as exc:
            LOGGER.error("Startup failed, Alpaca API error: %s", exc)
            raise
        scheduler.wait()
        scheduler.stop()
    finally:
        alerts.close()
        conn.close()


if __name__ == "__main__":
    run()
