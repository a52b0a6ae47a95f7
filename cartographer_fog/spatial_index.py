"""STRtree-backed index of revealed areas with level-of-detail queries."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
import logging
import math
import time
from threading import RLock
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.errors import GEOSException
from shapely.geometry import Point, box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.strtree import STRtree
from shapely.validation import make_valid

from .config import (
    LOD_ENABLED,
    LOD_FULL_DETAIL_DISTANCE_DEG,
    LOD_FULL_DETAIL_ZOOM,
    LOD_MIN_FEATURE_PIXELS,
    LOD_SIMPLIFY_PIXELS,
    LOD_TILE_SIZE_PX,
    LOD_VERTEX_BUDGET,
    MAX_LATITUDE,
    MAX_LONGITUDE,
    MIN_LATITUDE,
    MIN_LONGITUDE,
    SPATIAL_COMPACT_TOLERANCE_DEG,
    SPATIAL_DEFAULT_ZOOM,
    SPATIAL_MAX_INDEXED_VERTICES,
    SPATIAL_MAX_RESULTS,
    SPATIAL_QUERY_BUFFER_DEG,
)
from .errors import ConfigurationError
from .geometry.models import Bounds, PolygonFeature, Viewport, polygonal_parts
from .geometry.operations import vertex_count
from .geometry.validation import sanitize_feature
from .utils import content_digest, elapsed_ms

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SpatialIndexOptions:
    """Tunables for viewport queries and the in-memory vertex bound."""

    max_results: int = SPATIAL_MAX_RESULTS
    query_buffer: float = SPATIAL_QUERY_BUFFER_DEG
    lod_enabled: bool = LOD_ENABLED
    full_detail_zoom: float = LOD_FULL_DETAIL_ZOOM
    full_detail_distance: float = LOD_FULL_DETAIL_DISTANCE_DEG
    min_feature_pixels: float = LOD_MIN_FEATURE_PIXELS
    simplify_pixels: float = LOD_SIMPLIFY_PIXELS
    vertex_budget: int = LOD_VERTEX_BUDGET
    max_vertices: int = SPATIAL_MAX_INDEXED_VERTICES
    compact_tolerance: float = SPATIAL_COMPACT_TOLERANCE_DEG


@dataclass(slots=True)
class IndexedArea:
    area_id: str
    feature: PolygonFeature
    geometry: BaseGeometry
    vertices: int
    compacted: bool = False

    @property
    def bounds(self) -> Bounds:
        return tuple(self.geometry.bounds)  # type: ignore[return-value]


@dataclass(slots=True)
class SpatialQueryResult:
    """Areas returned for a viewport plus bookkeeping about LOD decisions."""

    features: List[PolygonFeature] = field(default_factory=list)
    candidates: int = 0
    skipped_lod: int = 0
    simplified: int = 0
    truncated: bool = False
    budget_exceeded: bool = False
    output_vertices: int = 0
    zoom: float = SPATIAL_DEFAULT_ZOOM
    query_time_ms: float = 0.0


@dataclass(slots=True)
class SpatialMemoryStats:
    entries: int
    total_vertices: int
    compacted_entries: int
    evicted_entries: int
    max_vertices: int


def pixel_degrees(zoom: float) -> float:
    """Approximate degrees of longitude covered by one screen pixel at ``zoom``."""

    return 360.0 / (LOD_TILE_SIZE_PX * (2.0 ** zoom))


def _bounds_distance(bounds: Bounds, point: Tuple[float, float]) -> float:
    min_x, min_y, max_x, max_y = bounds
    px, py = point
    dx = max(min_x - px, 0.0, px - max_x)
    dy = max(min_y - py, 0.0, py - max_y)
    return math.hypot(dx, dy)


def _area_id(feature: PolygonFeature) -> str:
    explicit = feature.properties.get("id")
    if isinstance(explicit, (str, int)) and not isinstance(explicit, bool):
        return str(explicit)
    return content_digest([feature.to_geojson()["geometry"]])


class SpatialIndex:
    """Hot set of revealed areas, queried by viewport.

    Entries are kept in least-recently-queried order. When the total vertex
    count exceeds ``options.max_vertices`` cold entries are simplified first
    and then dropped from the index; the backing store is never touched.
    """

    def __init__(self, options: Optional[SpatialIndexOptions] = None) -> None:
        self.options = options or SpatialIndexOptions()
        self._entries: "OrderedDict[str, IndexedArea]" = OrderedDict()
        self._lock = RLock()
        self._tree: Optional[STRtree] = None
        self._tree_ids: List[str] = []
        self._dirty = True
        self._total_vertices = 0
        self._evicted = 0
        self._log = logging.getLogger(self.__class__.__name__)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, area_id: object) -> bool:
        with self._lock:
            return area_id in self._entries

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def features(self) -> List[PolygonFeature]:
        """All indexed features in insertion/recency order."""

        with self._lock:
            return [entry.feature for entry in self._entries.values()]

    def insert(self, area: Any) -> Optional[str]:
        """Index one revealed area; return its id, or ``None`` if it was unusable."""

        with self._lock:
            area_id = self._insert_locked(area)
            if area_id is not None:
                self._enforce_budget_locked()
            return area_id

    def insert_many(self, areas: Iterable[Any]) -> List[str]:
        inserted: List[str] = []
        with self._lock:
            for area in areas:
                area_id = self._insert_locked(area)
                if area_id is not None:
                    inserted.append(area_id)
            self._enforce_budget_locked()
        return inserted

    def rebuild(self, areas: Iterable[Any]) -> List[str]:
        """Replace the index contents with ``areas``."""

        with self._lock:
            self._clear_locked()
            inserted = self.insert_many(areas)
        self._log.debug("Rebuilt spatial index with %d areas", len(inserted))
        return inserted

    def remove(self, area_id: str) -> bool:
        with self._lock:
            entry = self._entries.pop(area_id, None)
            if entry is None:
                return False
            self._total_vertices -= entry.vertices
            self._dirty = True
            return True

    def clear(self) -> None:
        with self._lock:
            self._clear_locked()
            self._evicted = 0

    def _clear_locked(self) -> None:
        self._entries.clear()
        self._tree = None
        self._tree_ids = []
        self._total_vertices = 0
        self._dirty = True

    def _insert_locked(self, area: Any) -> Optional[str]:
        feature = sanitize_feature(area)
        if feature is None:
            self._log.warning("Skipping revealed area that failed sanitization")
            return None
        geometry = feature.to_shapely()
        if not geometry.is_valid:
            geometry = unary_union(polygonal_parts(make_valid(geometry)))
            if geometry.is_empty:
                self._log.warning("Skipping revealed area with degenerate geometry")
                return None
        area_id = _area_id(feature)
        previous = self._entries.pop(area_id, None)
        if previous is not None:
            self._total_vertices -= previous.vertices
        entry = IndexedArea(area_id, feature, geometry, vertex_count(geometry))
        self._entries[area_id] = entry
        self._total_vertices += entry.vertices
        self._dirty = True
        return area_id

    def _ensure_tree(self) -> Optional[STRtree]:
        if self._dirty:
            self._tree_ids = list(self._entries)
            if self._tree_ids:
                self._tree = STRtree(
                    [self._entries[area_id].geometry for area_id in self._tree_ids]
                )
            else:
                self._tree = None
            self._dirty = False
        return self._tree

    def _candidates(self, query_geometry: BaseGeometry) -> List[IndexedArea]:
        tree = self._ensure_tree()
        if tree is None:
            return []
        indices = sorted(int(idx) for idx in tree.query(query_geometry))
        return [self._entries[self._tree_ids[idx]] for idx in indices]

    def query_viewport(
        self,
        bounds: Any,
        zoom: Optional[float] = None,
        *,
        max_results: Optional[int] = None,
        buffer: Optional[float] = None,
    ) -> SpatialQueryResult:
        """Broad-phase query for areas whose bounding boxes touch ``bounds``.

        Raises :class:`ConfigurationError` when ``bounds`` is invalid.
        """

        start = time.perf_counter()
        viewport = Viewport.from_bounds(bounds)
        opts = self.options
        zoom_level = SPATIAL_DEFAULT_ZOOM if zoom is None else float(zoom)
        limit = opts.max_results if max_results is None else max_results
        pad = opts.query_buffer if buffer is None else buffer
        query_box = box(
            viewport.min_lon - pad,
            viewport.min_lat - pad,
            viewport.max_lon + pad,
            viewport.max_lat + pad,
        )
        lod_active = opts.lod_enabled and zoom_level < opts.full_detail_zoom
        pixel_deg = pixel_degrees(zoom_level)
        center = viewport.center

        result = SpatialQueryResult(zoom=zoom_level)
        with self._lock:
            candidates = self._candidates(query_box)
            result.candidates = len(candidates)
            for entry in candidates:
                if len(result.features) >= limit:
                    result.truncated = True
                    break
                feature = entry.feature
                far = _bounds_distance(entry.bounds, center) > opts.full_detail_distance
                if lod_active and far:
                    min_x, min_y, max_x, max_y = entry.bounds
                    extent = max(max_x - min_x, max_y - min_y)
                    if extent < opts.min_feature_pixels * pixel_deg:
                        result.skipped_lod += 1
                        continue
                over_budget = result.output_vertices + entry.vertices > opts.vertex_budget
                if (lod_active and far) or over_budget:
                    factor = 4.0 if over_budget else 1.0
                    reduced = self._simplified(
                        entry, opts.simplify_pixels * pixel_deg * factor
                    )
                    if reduced is not None:
                        feature = reduced
                        result.simplified += 1
                    result.budget_exceeded = result.budget_exceeded or over_budget
                result.features.append(feature)
                result.output_vertices += feature.vertex_count
                self._entries.move_to_end(entry.area_id)

        result.query_time_ms = elapsed_ms(start)
        self._log.debug(
            "Viewport query returned %d/%d areas (lod_skipped=%d simplified=%d) in %.2f ms",
            len(result.features),
            result.candidates,
            result.skipped_lod,
            result.simplified,
            result.query_time_ms,
        )
        if result.truncated:
            self._log.warning(
                "Viewport query truncated at %d results (%d candidates)",
                limit,
                result.candidates,
            )
        return result

    def _simplified(self, entry: IndexedArea, tolerance: float) -> Optional[PolygonFeature]:
        if tolerance <= 0:
            return None
        try:
            reduced = entry.geometry.simplify(tolerance, preserve_topology=True)
        except (GEOSException, ValueError) as exc:
            self._log.debug("LOD simplification failed for %s: %s", entry.area_id, exc)
            return None
        if vertex_count(reduced) >= entry.vertices:
            return None
        return PolygonFeature.from_shapely(reduced, entry.feature.properties)

    def query_radius(
        self, center: Sequence[float], radius_degrees: float
    ) -> List[PolygonFeature]:
        """Areas within ``radius_degrees`` of ``center`` (lon, lat)."""

        try:
            lon, lat = float(center[0]), float(center[1])
        except (TypeError, ValueError, IndexError) as exc:
            raise ConfigurationError(f"Invalid query centre: {center!r}") from exc
        if not (MIN_LONGITUDE <= lon <= MAX_LONGITUDE and MIN_LATITUDE <= lat <= MAX_LATITUDE):
            raise ConfigurationError(f"Query centre out of range: [{lon}, {lat}]")
        if not math.isfinite(radius_degrees) or radius_degrees <= 0:
            raise ConfigurationError(f"Radius must be positive, got {radius_degrees!r}")
        origin = Point(lon, lat)
        search = origin.buffer(radius_degrees)
        with self._lock:
            candidates = self._candidates(search)
            if not candidates:
                return []
            geometries = np.array([entry.geometry for entry in candidates], dtype=object)
            distances = shapely.distance(geometries, origin)
            matches = [candidates[int(i)] for i in np.flatnonzero(distances <= radius_degrees)]
            for entry in matches:
                self._entries.move_to_end(entry.area_id)
            return [entry.feature for entry in matches]

    def memory_stats(self) -> SpatialMemoryStats:
        with self._lock:
            return SpatialMemoryStats(
                entries=len(self._entries),
                total_vertices=self._total_vertices,
                compacted_entries=sum(1 for e in self._entries.values() if e.compacted),
                evicted_entries=self._evicted,
                max_vertices=self.options.max_vertices,
            )

    def enforce_memory_budget(self) -> int:
        """Compact, then evict, cold entries until under the vertex bound.

        Returns the number of entries that were compacted or evicted.
        """

        with self._lock:
            return self._enforce_budget_locked()

    def _enforce_budget_locked(self) -> int:
        limit = self.options.max_vertices
        if limit <= 0 or self._total_vertices <= limit:
            return 0
        touched = 0
        for entry in list(self._entries.values()):
            if self._total_vertices <= limit:
                break
            if entry.compacted:
                continue
            if self._compact(entry):
                touched += 1
        evicted = 0
        while self._total_vertices > limit and self._entries:
            _, entry = self._entries.popitem(last=False)
            self._total_vertices -= entry.vertices
            evicted += 1
        if evicted:
            self._evicted += evicted
            self._dirty = True
        self._log.info(
            "Spatial index over vertex budget; compacted=%d evicted=%d total=%d/%d",
            touched,
            evicted,
            self._total_vertices,
            limit,
        )
        return touched + evicted

    def _compact(self, entry: IndexedArea) -> bool:
        try:
            reduced = entry.geometry.simplify(
                self.options.compact_tolerance, preserve_topology=True
            )
        except (GEOSException, ValueError) as exc:
            self._log.debug("Compaction failed for %s: %s", entry.area_id, exc)
            return False
        feature = PolygonFeature.from_shapely(reduced, entry.feature.properties)
        if feature is None or not polygonal_parts(reduced):
            return False
        new_vertices = vertex_count(reduced)
        if new_vertices >= entry.vertices:
            return False
        self._total_vertices += new_vertices - entry.vertices
        entry.geometry = reduced
        entry.feature = feature
        entry.vertices = new_vertices
        entry.compacted = True
        self._dirty = True
        return True


__all__ = [
    "IndexedArea",
    "SpatialIndex",
    "SpatialIndexOptions",
    "SpatialMemoryStats",
    "SpatialQueryResult",
    "pixel_degrees",
]
