from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests

from ruletrader.clock import format_local, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    slack_webhook: str | None = None
    slack_error_webhook: str | None = None
    discord_webhook: str | None = None
    cooldown_seconds: int = 0
    timezone: str = "America/New_York"


class AlertDispatcher:
    """Fire-and-forget notifications; delivery happens on a background worker."""

    def __init__(self, config: AlertConfig):
        self.config = config
        self._last_sent_ts: dict[str, float] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alerts")

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
        cooldown: bool = True,
    ) -> None:
        if not self.config.enabled:
            return
        if cooldown and self.config.cooldown_seconds > 0 and not self._claim(dedupe_key or event):
            return

        details = f"[{level.upper()}] {event}: {message}"
        if context:
            context_suffix = " | " + " ".join(f"{k}={v}" for k, v in context.items())
            details += context_suffix

        webhook = self.config.slack_error_webhook if level == "error" else self.config.slack_webhook
        try:
            self._pool.submit(self._deliver, details, webhook or self.config.slack_webhook)
        except RuntimeError:
            LOGGER.warning("Alert dropped after shutdown: %s", details)

    def order_placed(
        self,
        *,
        symbol: str,
        side: str,
        name: str,
        price: float,
        at: datetime | None = None,
    ) -> None:
        line = self._order_line(symbol=symbol, side=side, name=name, price=price, at=at)
        LOGGER.info("ORDER PLACED => %s", line)
        self.send(event="ORDER_PLACED", message=line, dedupe_key=f"placed-{symbol}-{side}-{name}-{price}")

    def order_cancelled(
        self,
        *,
        symbol: str,
        side: str,
        name: str,
        price: float | None,
        at: datetime | None = None,
    ) -> None:
        line = self._order_line(symbol=symbol, side=side, name=name, price=price, at=at)
        LOGGER.info("ORDER CANCELLED => %s", line)
        self.send(event="ORDER_CANCELLED", level="warning", message=line, dedupe_key=f"cancel-{symbol}-{side}-{name}")

    def error(self, message: str, *, dedupe_key: str | None = None) -> None:
        self.send(event="ERROR", level="error", message=message, dedupe_key=dedupe_key or f"error-{message}")

    def ping(self, message: str = "Engine alive") -> None:
        self.send(event="PING", message=message, cooldown=False)

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def _claim(self, key: str) -> bool:
        now = time.monotonic()
        window = self.config.cooldown_seconds
        with self._lock:
            prev = self._last_sent_ts.get(key)
            if prev is not None and (now - prev) < window:
                return False
            # drop keys whose window has passed
            for stale in [k for k, ts in self._last_sent_ts.items() if (now - ts) >= window]:
                del self._last_sent_ts[stale]
            self._last_sent_ts[key] = now
        return True

    def _order_line(self, *, symbol: str, side: str, name: str, price: float | None, at: datetime | None) -> str:
        price_text = f"${price:.3f}" if price is not None else "$-"
        stamp = format_local(at or utc_now(), self.config.timezone)
        return f"{symbol} | {side} | {name} | {price_text} | {stamp}"

    def _deliver(self, text: str, slack_webhook: str | None) -> None:
        self._send_slack(text, slack_webhook)
        self._send_discord(text)

    def _send_slack(self, text: str, webhook: str | None) -> None:
        url = (webhook or "").strip()
        if not url:
            return
        try:
            response = requests.post(url, json={"text": text}, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Slack alert failed: %s", exc)

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        try:
            response = requests.post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Discord alert failed: %s", exc)
