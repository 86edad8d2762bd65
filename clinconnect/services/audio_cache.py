"""
Bounded in-memory caches.

LRUCache is a small least-recently-used map with optional per-entry expiry.
AudioCache builds on it to hold generated speech so Twilio can fetch it back
over plain HTTP with ``<Play>``; entries are keyed by a content hash of the
voice and text, so the same sentence is synthesised once.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from clinconnect.config.constants import DEFAULT_AUDIO_CACHE_SIZE, LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class CacheEntry:
    """A single cache entry."""

    value: Any
    expires_at: Optional[float]

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class LRUCache:
    """
    LRU (Least Recently Used) cache.

    Holds at most ``max_size`` entries; inserting beyond that evicts the least
    recently used entry first.
    """

    def __init__(
        self,
        max_size: int,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.evictions = 0
        self._clock = clock
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from cache, refreshing its recency."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return default
            if entry.is_expired(self._clock()):
                del self._cache[key]
                return default
            # Move to end (most recently used)
            self._cache.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set a value in cache."""
        ttl = ttl if ttl is not None else self.default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None

        with self._lock:
            if key in self._cache:
                del self._cache[key]

            while len(self._cache) >= self.max_size:
                evicted, _ = self._cache.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Evicted cache entry {evicted}")

            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def audio_key(text: str, voice: str) -> str:
    """Content hash identifying one synthesised utterance."""
    return hashlib.sha256(f"{voice}:{text}".encode("utf-8")).hexdigest()


class AudioCache:
    """Generated speech (MP3 bytes) addressable by id."""

    def __init__(self, max_size: int = DEFAULT_AUDIO_CACHE_SIZE):
        self._entries = LRUCache(max_size)

    def put(self, text: str, voice: str, audio: bytes) -> str:
        """Store audio for ``text`` spoken in ``voice`` and return its id."""
        audio_id = audio_key(text, voice)
        self._entries.set(audio_id, audio)
        logger.debug(f"Cached {len(audio)} bytes of speech as {audio_id}")
        return audio_id

    def get(self, audio_id: str) -> Optional[bytes]:
        return self._entries.get(audio_id)

    def lookup(self, text: str, voice: str) -> Optional[str]:
        """Id of already cached audio for this utterance, if any."""
        audio_id = audio_key(text, voice)
        return audio_id if self._entries.get(audio_id) is not None else None

    @property
    def max_size(self) -> int:
        return self._entries.max_size

    def __len__(self) -> int:
        return len(self._entries)
