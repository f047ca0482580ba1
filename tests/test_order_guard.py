from __future__ import annotations

import threading

import pytest

from ruletrader.execution.guard import OrderGuard


def test_second_acquire_is_refused_until_release() -> None:
    guard = OrderGuard()
    assert guard.try_acquire("r1")
    assert not guard.try_acquire("r1")
    assert guard.try_acquire("r2")
    guard.release("r1")
    assert guard.try_acquire("r1")


def test_hold_releases_on_exception() -> None:
    guard = OrderGuard()
    with pytest.raises(RuntimeError):
        with guard.hold("r1") as acquired:
            assert acquired
            assert guard.is_pending("r1")
            raise RuntimeError("boom")
    assert not guard.is_pending("r1")


def test_nested_hold_does_not_release_owner_slot() -> None:
    guard = OrderGuard()
    with guard.hold("r1") as outer:
        with guard.hold("r1") as inner:
            assert outer and not inner
        assert guard.is_pending("r1")
    assert guard.pending_rule_ids() == set()


def test_only_one_thread_wins_concurrent_acquire() -> None:
    guard = OrderGuard()
    barrier = threading.Barrier(16)
    winners: list[int] = []
    lock = threading.Lock()

    def _worker(idx: int) -> None:
        barrier.wait()
        if guard.try_acquire("r1"):
            with lock:
                winners.append(idx)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(winners) == 1
