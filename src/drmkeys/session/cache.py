"""
Short-TTL in-memory store of derived session keys.

Maps a session id to its session key so the key is not re-derived on
every asset request within one playback session. Nothing here is ever
written to durable storage.

Expiry is lazy: an entry past its deadline is evicted on the next read,
there is no background timer. The clock is injectable so tests can move
time forward deterministically.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..encryption.keys import SessionKey

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: SessionKey
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class SessionCache:
    """Keyed session-key store with per-entry TTL.

    Entries are immutable and replaced as a unit under a lock, so a reader
    racing a writer on the same id sees either the old or the new key.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def put(self, session_id: str, key: SessionKey, ttl_seconds: float) -> None:
        """Insert or overwrite the key for ``session_id``."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        entry = CacheEntry(key=key, expires_at=self._clock() + ttl_seconds)
        with self._lock:
            self._entries[session_id] = entry

    def get(self, session_id: str) -> Optional[SessionKey]:
        """Return the live key for ``session_id`` or None if absent/expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[session_id]
                LOGGER.debug("Evicted expired session %s", session_id)
                return None
            return entry.key

    def touch(self, session_id: str, ttl_seconds: float) -> bool:
        """Extend a live entry to ``now + ttl_seconds``. False if absent/expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or entry.is_expired(now):
                self._entries.pop(session_id, None)
                return False
            self._entries[session_id] = CacheEntry(key=entry.key, expires_at=now + ttl_seconds)
            return True

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, e in self._entries.items() if e.is_expired(now)]
            for sid in expired:
                del self._entries[sid]
        if expired:
            LOGGER.info("Cleaned up %d expired session keys", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            expired = sum(1 for e in self._entries.values() if e.is_expired(now))
        return {"total": total, "expired": expired}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        return self.get(session_id) is not None
