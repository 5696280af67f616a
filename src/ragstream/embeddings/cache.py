"""
Embedding Cache

Content-keyed, TTL-bounded in-memory cache of embedding vectors with
single-flight de-duplication.

Single-flight
-------------
When several coroutines ask for the same key while nothing is cached, only
the first one runs the factory (the network call). The others wait on the
same in-flight future and receive its result, or its failure. If the caller
that started the request is cancelled, waiters receive a
``TransientEmbeddingError`` rather than a cancellation they did not ask for.
Failures and cancellations are never cached, and the in-flight slot is
cleared so a later caller starts a fresh request.

The in-flight table is keyed per entry; no lock is held across the awaited
network call, so unrelated keys never serialize behind each other.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Awaitable, Callable, Dict, List, Optional

from ..core.errors import TransientEmbeddingError

logger = logging.getLogger("ragstream.cache")


@dataclass(frozen=True)
class _CacheEntry:
    vector: tuple
    expires_at: float


class EmbeddingCache:
    """
    In-memory embedding cache.

    Parameters
    ----------
    ttl_seconds : float
        Lifetime of a cached vector.

    max_entries : int
        Capacity. When full, the oldest 10% of entries are evicted.

    clock : Callable[[], float]
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")

        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._lock = RLock()

    @staticmethod
    def make_key(provider: str, model: str, text: str) -> str:
        """Cache key for (provider, model, content-hash)."""
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{provider}:{model}:{digest}"

    # ------------------------------------------------------------------
    # Plain lookup
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[List[float]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if entry.expires_at <= self._clock():
                del self._entries[key]
                logger.debug("Cache entry expired: %s", key[:32])
                return None

            return list(entry.vector)

    def set(self, key: str, vector: List[float]) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_oldest()

            self._entries[key] = _CacheEntry(
                vector=tuple(vector),
                expires_at=self._clock() + self._ttl,
            )

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self, model: Optional[str] = None) -> int:
        """
        Drop cached vectors, optionally only those of one model.

        Returns the number of removed entries.
        """
        with self._lock:
            if model is None:
                count = len(self._entries)
                self._entries.clear()
                return count

            marker = f":{model}:"
            doomed = [k for k in self._entries if marker in k]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    # ------------------------------------------------------------------
    # Single-flight
    # ------------------------------------------------------------------

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[List[float]]],
    ) -> List[float]:
        """
        Return the cached vector for ``key`` or compute it exactly once.

        Concurrent callers for the same missing key share one ``factory``
        invocation. A waiter being cancelled does not cancel the shared
        call. If the caller that started it is cancelled, the remaining
        waiters fail with ``TransientEmbeddingError``.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        flight = self._inflight.get(key)
        if flight is not None:
            result = await asyncio.shield(flight)
            return list(result)

        flight = asyncio.get_running_loop().create_future()
        self._inflight[key] = flight

        try:
            value = await factory()
        except asyncio.CancelledError:
            flight.set_exception(
                TransientEmbeddingError(f"Shared embedding request {key} was cancelled")
            )
            flight.exception()
            raise
        except BaseException as exc:
            flight.set_exception(exc)
            # Waiters get the failure; mark it retrieved for the no-waiter case.
            flight.exception()
            raise
        else:
            self.set(key, value)
            flight.set_result(value)
            return list(value)
        finally:
            if self._inflight.get(key) is flight:
                del self._inflight[key]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _evict_oldest(self) -> None:
        count = max(1, len(self._entries) // 10)
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].expires_at)
        for key, _ in oldest[:count]:
            del self._entries[key]
        logger.debug("Evicted %d oldest cache entries", count)
