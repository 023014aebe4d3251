"""Tests for the TTL session-key cache."""

import threading

import pytest

from drmkeys.encryption.keys import SessionKey
from drmkeys.session.cache import CacheEntry, SessionCache


def _key(fill: int) -> SessionKey:
    return SessionKey(bytes([fill]) * 32)


class TestSessionCache:
    """Test put/get and lazy expiry."""

    def test_put_get(self, clock):
        cache = SessionCache(clock=clock)
        cache.put("s1", _key(1), 60)
        assert cache.get("s1") == _key(1)
        assert "s1" in cache
        assert cache.get("missing") is None

    def test_entry_expires_after_ttl(self, clock):
        """Test a 1-second entry is gone once the clock passes its deadline."""
        cache = SessionCache(clock=clock)
        cache.put("s1", _key(1), 1)

        clock.advance(1)
        assert cache.get("s1") == _key(1)

        clock.advance(0.001)
        assert cache.get("s1") is None
        assert len(cache) == 0

    def test_overwrite_replaces_key(self, clock):
        cache = SessionCache(clock=clock)
        cache.put("s1", _key(1), 60)
        cache.put("s1", _key(2), 60)
        assert cache.get("s1") == _key(2)

    def test_rejects_non_positive_ttl(self, clock):
        with pytest.raises(ValueError):
            SessionCache(clock=clock).put("s1", _key(1), 0)

    def test_clear_and_delete(self, clock):
        cache = SessionCache(clock=clock)
        cache.put("a", _key(1), 60)
        cache.put("b", _key(2), 60)
        cache.delete("a")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_touch_extends_live_entry(self, clock):
        """Test touch pushes the deadline forward for live sessions only."""
        cache = SessionCache(clock=clock)
        cache.put("s1", _key(1), 10)
        clock.advance(8)
        assert cache.touch("s1", 10) is True
        clock.advance(8)
        assert cache.get("s1") == _key(1)

        clock.advance(11)
        assert cache.touch("s1", 10) is False
        assert cache.touch("unknown", 10) is False

    def test_cleanup_and_stats(self, clock):
        cache = SessionCache(clock=clock)
        cache.put("short", _key(1), 1)
        cache.put("long", _key(2), 100)
        clock.advance(5)
        assert cache.stats() == {"total": 2, "expired": 1}
        assert cache.cleanup_expired() == 1
        assert cache.stats() == {"total": 1, "expired": 0}

    def test_entry_is_immutable(self):
        entry = CacheEntry(key=_key(1), expires_at=10.0)
        with pytest.raises(AttributeError):
            entry.expires_at = 20.0


class TestSessionCacheConcurrency:
    """Test concurrent access never yields a torn entry."""

    def test_reader_sees_old_or_new_key(self, clock):
        cache = SessionCache(clock=clock)
        old, new = _key(1), _key(2)
        cache.put("s", old, 60)
        seen = set()
        errors = []

        def writer():
            for i in range(500):
                cache.put("s", new if i % 2 else old, 60)

        def reader():
            for _ in range(500):
                value = cache.get("s")
                if value not in (old, new):
                    errors.append(value)
                seen.add(bytes(value))

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert seen <= {bytes(old), bytes(new)}
