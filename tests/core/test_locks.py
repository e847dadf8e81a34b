"""Tests for obspine.core.locks."""

import threading
import time

from obspine.core.locks import KeyedLock


class TestKeyedLock:
    def test_reentrant(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("a"):
                pass

    def test_keys_created_on_first_use(self):
        locks = KeyedLock()
        with locks.hold_many(["b", "a", "b"]):
            pass
        assert locks.keys() == ["a", "b"]

    def test_same_key_is_serialized(self):
        locks = KeyedLock()
        events: list[str] = []

        def worker(name: str) -> None:
            with locks.hold("p"):
                events.append(f"{name}-in")
                time.sleep(0.02)
                events.append(f"{name}-out")

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("x", "y")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        # no interleaving
        assert events[0][0] == events[1][0]
        assert events[2][0] == events[3][0]

    def test_distinct_keys_do_not_block(self):
        locks = KeyedLock()
        entered = threading.Event()

        def other() -> None:
            with locks.hold("q"):
                entered.set()

        with locks.hold("p"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=2)
            t.join()

    def test_discard_drops_idle_key(self):
        locks = KeyedLock()
        with locks.hold("a"):
            pass
        locks.discard("a")
        locks.discard("unknown")
        assert locks.keys() == []

    def test_discard_while_held_waits_for_release(self):
        locks = KeyedLock()
        with locks.hold("a"):
            locks.discard("a")
            assert locks.keys() == ["a"]
        assert locks.keys() == []
