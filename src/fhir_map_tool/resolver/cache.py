# src/fhir_map_tool/resolver/cache.py
"""
Bounded TTL cache with single-flight loading.

Entries expire a fixed time after they were written. "Not found" results are
cached too, with a shorter lifetime, so a burst of lookups for a definition
that is still being installed does not hammer the backing store.

Concurrent misses for one key share a single load: the first caller runs the
loader, the others wait on the same Future and receive the identical object.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from ..exceptions import ResolverTimeout

V = TypeVar("V")


@dataclass
class _Entry:
    value: Any
    expires: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    loads: int = 0
    evictions: int = 0


class TTLCache(Generic[V]):
    """
    Thread-safe LRU cache with expire-after-write semantics.

    Parameters
    ----------
    ttl : float, default=1.0
        Lifetime in seconds of a positive entry.
    capacity : int, default=10000
        Maximum number of entries; the least recently used entry is evicted.
    negative_ttl : float, default=0.25
        Lifetime in seconds of a cached ``None``.
    clock : callable, default=time.monotonic
        Time source, injectable for tests.
    """

    def __init__(
        self,
        ttl: float = 1.0,
        capacity: int = 10000,
        negative_ttl: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.ttl = ttl
        self.capacity = capacity
        self.negative_ttl = negative_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, _Entry]" = OrderedDict()
        self._inflight: Dict[Hashable, Tuple[Future, int]] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Optional[V]],
        timeout: Optional[float] = None,
    ) -> Optional[V]:
        """
        Return the cached value for ``key``, loading it on a miss.

        Parameters
        ----------
        key : Hashable
            Cache key.
        loader : callable
            Produces the value (or None) on a miss. Called at most once per
            concurrent miss.
        timeout : float or None
            How long a waiting caller blocks on another caller's load.

        Returns
        -------
        object or None
            The cached or freshly loaded value.

        Raises
        ------
        ResolverTimeout
            If waiting on a concurrent load exceeds ``timeout``.
        Exception
            Whatever the loader raised, re-raised in every waiting caller.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.expires > self._clock():
                    self._entries.move_to_end(key)
                    self.stats.hits += 1
                    return entry.value
                del self._entries[key]
            self.stats.misses += 1
            me = threading.get_ident()
            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                future = Future()
                self._inflight[key] = (future, me)
            else:
                future, loading_thread = pending

        if not owner:
            if loading_thread == me:
                # re-entrant load from inside the loader; waiting would deadlock
                return loader()
            try:
                return future.result(timeout=timeout)
            except FutureTimeout as e:
                raise ResolverTimeout(f"Timed out waiting for {key}") from e

        try:
            value = loader()
        except Exception as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        with self._lock:
            self.stats.loads += 1
            ttl = self.ttl if value is not None else self.negative_ttl
            self._entries[key] = _Entry(value, self._clock() + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self.stats.evictions += 1
            self._inflight.pop(key, None)
        future.set_result(value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one entry, or all entries when ``key`` is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
