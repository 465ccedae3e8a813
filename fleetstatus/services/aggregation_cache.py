"""
Read-through cache in front of the aggregation engine.

Entries are dropped explicitly (successful transitions, manual refresh) or
after the configured TTL. Fleet-wide keys keep their last good value across
invalidation, so a degraded backend still yields a result tagged ``stale``;
per-vehicle keys are evicted instead. The map holds at most ``max_entries``
keys, least recently used first out.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional, TypeVar

import structlog

from ..exceptions import AggregationDegraded

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class _Entry:
    value: Any
    computed_at: float
    valid: bool = True
    retain: bool = True


class AggregationCache:
    def __init__(
        self,
        ttl_seconds: float = 300,
        monotonic: Callable[[], float] = time.monotonic,
        max_entries: int = 1024,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._monotonic = monotonic
        self._max_entries = max_entries
        self._entries: "OrderedDict[Hashable, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._generation = 0

    def _fresh(self, entry: Optional[_Entry]) -> bool:
        if entry is None or not entry.valid:
            return False
        if self._ttl_seconds <= 0:
            return True
        return self._monotonic() - entry.computed_at < self._ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_compute(
        self,
        key: Hashable,
        compute: Callable[[], T],
        fallback: Callable[[], T],
        retain_stale: bool = True,
    ) -> T:
        """
        Return the cached value for ``key``, computing it when missing or invalid.

        Args:
            key: Cache key
            compute: Produces a fresh value; may raise AggregationDegraded
            fallback: Produces an empty value when nothing was ever cached
            retain_stale: Keep the value across invalidation as a degraded fallback

        Returns:
            Fresh value, or a ``stale``-tagged copy of the last good one
        """
        with self._lock:
            entry = self._entries.get(key)
            if self._fresh(entry):
                self._entries.move_to_end(key)
                return entry.value
            generation = self._generation

        # Computed outside the lock: aggregation can be slow and is read-only
        try:
            value = compute()
        except AggregationDegraded as exc:
            logger.warning("aggregation_serving_stale", key=str(key), cached=entry is not None, error=str(exc))
            if entry is not None:
                return entry.value.model_copy(update={"stale": True})
            return fallback().model_copy(update={"stale": True})

        with self._lock:
            if generation != self._generation and not retain_stale:
                return value
            # An invalidation during compute keeps the value only as a fallback
            self._entries[key] = _Entry(
                value=value,
                computed_at=self._monotonic(),
                valid=generation == self._generation,
                retain=retain_stale,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return value

    def invalidate(self, reason: str = "manual") -> None:
        with self._lock:
            self._generation += 1
            evicted = [key for key, entry in self._entries.items() if not entry.retain]
            for key in evicted:
                del self._entries[key]
            for entry in self._entries.values():
                entry.valid = False
            count = len(self._entries)
        logger.info("aggregation_cache_invalidated", reason=reason, entries=count, evicted=len(evicted))
