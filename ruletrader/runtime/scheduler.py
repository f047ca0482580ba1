from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from ruletrader.clock import format_local, should_ping, utc_now
from ruletrader.data.alpaca_client import AlpacaAPIError
from ruletrader.monitoring.alerts import AlertDispatcher
from ruletrader.monitoring.dashboard import DashboardWriter
from ruletrader.runtime.engine import RuleEngine, TickSummary
from ruletrader.storage.models import Frequency

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Cadence:
    frequency: Frequency
    interval_seconds: float


class EngineScheduler:
    """
    Drives the engine on two cadences plus a heartbeat, each on its own thread.

    Ticks of one cadence never overlap: a tick that overruns its slot causes the
    missed slots to be skipped. The fast and slow cadences run independently and
    rely on the order guard for per-rule exclusion.
    """

    def __init__(
        self,
        engine: RuleEngine,
        *,
        fast_interval_seconds: float = 5.0,
        slow_interval_seconds: float = 60.0,
        heartbeat_seconds: float = 60.0,
        closed_heartbeat_minutes: int = 30,
        timezone: str = "America/New_York",
        alerts: AlertDispatcher | None = None,
        dashboard: DashboardWriter | None = None,
        metrics: Callable[[], dict[str, int]] | None = None,
    ):
        self.engine = engine
        self.cadences = (
            Cadence(Frequency.FIVE_SECONDS, fast_interval_seconds),
            Cadence(Frequency.ONE_MINUTE, slow_interval_seconds),
        )
        self.heartbeat_seconds = heartbeat_seconds
        self.closed_heartbeat_minutes = closed_heartbeat_minutes
        self.timezone = timezone
        self.alerts = alerts
        self.dashboard = dashboard
        self.metrics = metrics
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._last_ticks: dict[Frequency, TickSummary] = {}
        self._ticks_lock = threading.Lock()

    def start(self) -> None:
        # Startup failures propagate so the process exits instead of trading blind.
        self.engine.refresh_market_hours()
        self.engine.refresh_account()
        for cadence in self.cadences:
            self.engine.refresh_rules(cadence.frequency)
        LOGGER.info(
            "Engine started: fast=%d rules slow=%d rules",
            len(self.engine.rules_for(Frequency.FIVE_SECONDS)),
            len(self.engine.rules_for(Frequency.ONE_MINUTE)),
        )

        self.stop_event.clear()
        for cadence in self.cadences:
            thread = threading.Thread(
                target=self._run_cadence,
                args=(cadence,),
                name=f"cadence-{cadence.frequency.value}",
                daemon=True,
            )
            self._threads.append(thread)
        self._threads.append(threading.Thread(target=self._run_heartbeat, name="heartbeat", daemon=True))
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float | None = 30.0) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        LOGGER.info("Engine stopped.")

    def wait(self) -> None:
        while not self.stop_event.wait(1.0):
            pass

    def run_once(self) -> list[TickSummary]:
        summaries: list[TickSummary] = []
        for cadence in self.cadences:
            summary = self.tick(cadence.frequency)
            if summary is not None:
                summaries.append(summary)
        self.heartbeat()
        return summaries

    def tick(self, frequency: Frequency) -> TickSummary | None:
        try:
            self.engine.refresh_state(frequency)
            summary = self.engine.process_feeds(frequency)
        except AlpacaAPIError as exc:
            LOGGER.error("Alpaca API error during %s tick: %s", frequency.value, exc)
            if self.alerts is not None:
                self.alerts.error(f"Alpaca API error: {exc}", dedupe_key=f"api-{type(exc).__name__}")
            return None
        except Exception:
            LOGGER.exception("Unhandled %s tick error", frequency.value)
            if self.alerts is not None:
                self.alerts.error("Unhandled exception in engine tick", dedupe_key="tick-unhandled")
            return None
        with self._ticks_lock:
            self._last_ticks[frequency] = summary
        return summary

    def heartbeat(self, now: datetime | None = None) -> None:
        current = now or utc_now()
        hours = self.engine.market_hours
        market_closed = hours is None or hours.is_closed_now
        if self.alerts is not None and should_ping(
            current,
            market_closed=market_closed,
            closed_interval_minutes=self.closed_heartbeat_minutes,
        ):
            state = "closed" if market_closed else "open"
            self.alerts.ping(f"Engine alive, market {state} | {format_local(current, self.timezone)}")
        if self.dashboard is not None:
            try:
                self.dashboard.write(self._dashboard_payload())
            except OSError as exc:
                LOGGER.warning("Dashboard write failed: %s", exc)

    def _dashboard_payload(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.engine.snapshot())
        with self._ticks_lock:
            payload["last_ticks"] = {
                frequency.value: {
                    "started_at": summary.started_at.isoformat(),
                    "skipped_reason": summary.skipped_reason,
                    "rules_processed": summary.rules_processed,
                    "orders_placed": summary.orders_placed,
                    "failures": summary.failures,
                }
                for frequency, summary in self._last_ticks.items()
            }
        if self.metrics is not None:
            payload["api"] = self.metrics()
        return payload

    def _run_cadence(self, cadence: Cadence) -> None:
        interval = cadence.interval_seconds
        next_run = time.monotonic()
        while not self.stop_event.is_set():
            self.tick(cadence.frequency)
            next_run += interval
            now = time.monotonic()
            if now > next_run:
                missed = int((now - next_run) // interval) + 1
                LOGGER.warning("%s tick overran, skipping %d slot(s)", cadence.frequency.value, missed)
                next_run += missed * interval
            self.stop_event.wait(max(0.0, next_run - now))

    def _run_heartbeat(self) -> None:
        while not self.stop_event.wait(self.heartbeat_seconds):
            try:
                self.heartbeat()
            except Exception:
                LOGGER.exception("Heartbeat failed")
