import threading
import time
from unittest.mock import MagicMock

import pytest

from athena.chat_cache import ChatSessionCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _conv():
    return MagicMock(name="conversation")


class TestChatSessionCache:
    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ChatSessionCache(max_entries=0)

    def test_get_missing(self):
        assert ChatSessionCache().get("nobody#0000") is None

    def test_least_recently_used_is_evicted(self):
        cache = ChatSessionCache(max_entries=2)
        a, b, c = _conv(), _conv(), _conv()
        cache.put("a#1000", a)
        cache.put("b#1000", b)
        # touching a makes b the oldest
        assert cache.get("a#1000") is a
        cache.put("c#1000", c)
        assert len(cache) == 2
        assert cache.get("b#1000") is None
        assert cache.get("a#1000") is a
        assert cache.get("c#1000") is c

    def test_idle_entries_expire(self):
        clock = FakeClock()
        cache = ChatSessionCache(ttl_seconds=60, clock=clock)
        cache.put("a#1000", _conv())
        clock.now = 61
        assert cache.get("a#1000") is None
        assert len(cache) == 0

    def test_reads_refresh_the_ttl(self):
        clock = FakeClock()
        cache = ChatSessionCache(ttl_seconds=60, clock=clock)
        conv = _conv()
        cache.put("a#1000", conv)
        clock.now = 50
        assert cache.get("a#1000") is conv
        clock.now = 100
        assert cache.get("a#1000") is conv

    def test_get_or_create_reuses_existing(self):
        cache = ChatSessionCache()
        factory = MagicMock(side_effect=_conv)
        first = cache.get_or_create("a#1000", factory)
        second = cache.get_or_create("a#1000", factory)
        assert first is second
        factory.assert_called_once()

    def test_discard(self):
        cache = ChatSessionCache()
        cache.put("a#1000", _conv())
        assert cache.discard("a#1000") is True
        assert cache.discard("a#1000") is False
        assert cache.get("a#1000") is None

    def test_concurrent_get_or_create_builds_once(self):
        cache = ChatSessionCache()
        barrier = threading.Barrier(5)
        built = []

        def factory():
            time.sleep(0.02)
            conv = _conv()
            built.append(conv)
            return conv

        results = []

        def worker():
            barrier.wait()
            results.append(cache.get_or_create("a#1000", factory))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(built) == 1
        assert all(r is built[0] for r in results)
