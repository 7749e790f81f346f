"""Unit tests for epubcache_backend.locks."""

from __future__ import annotations

import threading
import time

from epubcache_backend.locks import KeyedLocks


class TestKeyedLocks:
    def test_same_key_is_serialised(self) -> None:
        locks = KeyedLocks()
        active = 0
        peak = 0
        guard = threading.Lock()

        def work() -> None:
            nonlocal active, peak
            with locks.hold("k"):
                with guard:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with guard:
                    active -= 1

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert peak == 1

    def test_distinct_keys_do_not_block(self) -> None:
        locks = KeyedLocks()
        entered = threading.Event()

        def other() -> None:
            with locks.hold("b"):
                entered.set()

        with locks.hold("a"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=2)
            t.join()

    def test_released_locks_are_dropped(self) -> None:
        locks = KeyedLocks()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0
