"""Bounded LRU/TTL cache for fog results keyed by quantized viewport."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import time
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple

from cachetools import TTLCache

from .config import (
    FOG_CACHE_MAX_ENTRIES,
    FOG_CACHE_TTL_S,
    FOG_CACHE_VIEWPORT_TOLERANCE_DEG,
)
from .geometry.models import Viewport

if TYPE_CHECKING:  # pragma: no cover
    from .fog_calculation import FogResult

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CacheSignature:
    """Cache key: viewport grid cells plus everything that changes the answer."""

    bounds: Tuple[int, int, int, int]
    version: int
    areas_digest: str = ""
    mode: str = "accurate"
    zoom: Optional[int] = None


@dataclass(slots=True)
class FogCacheEntry:
    result: "FogResult"
    created_at: float
    calculation_time_ms: float
    access_count: int = 0


@dataclass(slots=True)
class FogCacheStats:
    entries: int
    max_entries: int
    hits: int
    misses: int
    hit_ratio: float
    evicted_entries: int
    expired_entries: int
    average_time_saved_ms: float
    version: int


class _CountingTTLCache(TTLCache):
    """TTLCache that counts least-recently-used evictions and TTL expirations."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float]) -> None:
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self.evictions = 0
        self.expirations = 0

    def popitem(self) -> Tuple[Any, Any]:
        key, value = super().popitem()
        self.evictions += 1
        return key, value

    def expire(self, time: Optional[float] = None) -> List[Tuple[Any, Any]]:
        # Every expiry path (len, setitem, popitem) goes through here.
        expired = super().expire(time)
        self.expirations += len(expired)
        return expired


class FogCache:
    """Memoise fog results for recently seen viewports.

    Viewport bounds are snapped to a grid of ``viewport_tolerance`` degrees
    so sub-tolerance pans reuse the same entry. Bumping :attr:`version`
    invalidates everything at once without walking the entries.
    """

    def __init__(
        self,
        max_entries: int = FOG_CACHE_MAX_ENTRIES,
        ttl_seconds: float = FOG_CACHE_TTL_S,
        viewport_tolerance: float = FOG_CACHE_VIEWPORT_TOLERANCE_DEG,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if viewport_tolerance <= 0:
            raise ValueError("viewport_tolerance must be > 0")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.viewport_tolerance = viewport_tolerance
        self._clock = clock
        self._lock = RLock()
        self._version = 0
        self._hits = 0
        self._misses = 0
        self._time_saved_ms = 0.0
        self._cache = self._new_store()

    def _new_store(self) -> _CountingTTLCache:
        ttl = self.ttl_seconds if self.ttl_seconds > 0 else math.inf
        return _CountingTTLCache(max(self.max_entries, 1), ttl, self._clock)

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def signature(
        self,
        bounds: Any,
        areas_digest: str = "",
        mode: str = "accurate",
        zoom: Optional[float] = None,
    ) -> CacheSignature:
        """Build a key for ``bounds``; raises ConfigurationError for invalid bounds.

        ``zoom`` is bucketed to whole levels since level-of-detail output
        only changes across them.
        """

        viewport = Viewport.from_bounds(bounds)
        tol = self.viewport_tolerance
        cells = tuple(int(round(value / tol)) for value in viewport.bounds)
        zoom_bucket = None if zoom is None else int(math.floor(zoom))
        with self._lock:
            return CacheSignature(
                cells, self._version, areas_digest, mode, zoom_bucket  # type: ignore[arg-type]
            )

    def _expire_locked(self) -> None:
        self._cache.expire()

    def get(self, signature: CacheSignature) -> Optional["FogResult"]:
        with self._lock:
            self._expire_locked()
            if signature.version != self._version:
                self._misses += 1
                return None
            entry: Optional[FogCacheEntry] = self._cache.get(signature)
            if entry is None:
                self._misses += 1
                return None
            entry.access_count += 1
            self._hits += 1
            self._time_saved_ms += entry.calculation_time_ms
            return entry.result

    def put(self, signature: CacheSignature, result: "FogResult") -> None:
        if self.max_entries <= 0:
            return
        with self._lock:
            if signature.version != self._version:
                LOGGER.debug("Dropping fog result computed for stale cache version")
                return
            self._expire_locked()
            self._cache[signature] = FogCacheEntry(
                result=result,
                created_at=self._clock(),
                calculation_time_ms=result.calculation_time_ms,
            )

    def invalidate(
        self, predicate: Optional[Callable[[CacheSignature], bool]] = None
    ) -> int:
        """Invalidate entries and return how many were affected.

        Without a predicate the version is bumped so every existing key
        misses; the stale entries age out through LRU/TTL.
        """

        with self._lock:
            if predicate is None:
                self._version += 1
                LOGGER.debug("Fog cache version bumped to %d", self._version)
                return len(self._cache)
            doomed = [key for key in list(self._cache.keys()) if predicate(key)]
            for key in doomed:
                self._cache.pop(key, None)
            return len(doomed)

    def invalidate_viewport(self, bounds: Any) -> int:
        """Remove entries whose cached viewport overlaps ``bounds``."""

        viewport = Viewport.from_bounds(bounds)
        tol = self.viewport_tolerance

        def overlaps(signature: CacheSignature) -> bool:
            cell_bounds = tuple(cell * tol for cell in signature.bounds)
            return viewport.intersects(cell_bounds)  # type: ignore[arg-type]

        removed = self.invalidate(overlaps)
        if removed:
            LOGGER.debug("Invalidated %d fog cache entries for viewport", removed)
        return removed

    def clear(self) -> None:
        """Drop every entry and reset counters (primarily for testing)."""

        with self._lock:
            self._cache = self._new_store()
            self._hits = 0
            self._misses = 0
            self._time_saved_ms = 0.0

    def stats(self) -> FogCacheStats:
        with self._lock:
            self._expire_locked()
            lookups = self._hits + self._misses
            return FogCacheStats(
                entries=len(self._cache),
                max_entries=self.max_entries,
                hits=self._hits,
                misses=self._misses,
                hit_ratio=self._hits / lookups if lookups else 0.0,
                evicted_entries=self._cache.evictions,
                expired_entries=self._cache.expirations,
                average_time_saved_ms=(
                    self._time_saved_ms / self._hits if self._hits else 0.0
                ),
                version=self._version,
            )


__all__ = ["CacheSignature", "FogCache", "FogCacheEntry", "FogCacheStats"]
