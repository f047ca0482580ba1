from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterator


class OrderGuard:
    """Per-rule mutual exclusion for order placement.

    A rule id is present only while a placement for it is in flight.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[str, float] = {}

    def is_pending(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._inflight

    def pending_rule_ids(self) -> set[str]:
        with self._lock:
            return set(self._inflight)

    def try_acquire(self, rule_id: str) -> bool:
        with self._lock:
            if rule_id in self._inflight:
                return False
            self._inflight[rule_id] = time.monotonic()
            return True

    def release(self, rule_id: str) -> None:
        with self._lock:
            self._inflight.pop(rule_id, None)

    @contextmanager
    def hold(self, rule_id: str) -> Iterator[bool]:
        acquired = self.try_acquire(rule_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(rule_id)
