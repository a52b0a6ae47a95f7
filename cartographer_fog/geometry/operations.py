"""Boolean and buffer operations on polygon features.

Every public function returns an :class:`OperationResult` instead of raising:
failures are reported through ``errors`` and ``warnings`` so callers can
decide whether to fall back. Execution time and input/output complexity are
recorded for every call, including failed ones.
"""

from __future__ import annotations

import logging
import math
import time
from threading import Lock
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

import shapely
from pyproj import CRS, Transformer
from shapely.errors import GEOSException
from shapely.geometry import Point, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as shapely_transform
from shapely.ops import unary_union
from shapely.validation import explain_validity, make_valid

from ..config import (
    BUFFER_QUAD_SEGMENTS,
    MAX_LATITUDE,
    MAX_LONGITUDE,
    MIN_LATITUDE,
    MIN_LONGITUDE,
    SIMPLIFY_MAX_ATTEMPTS,
)
from ..utils import elapsed_ms
from .models import (
    WORLD_VIEWPORT,
    GeometryComplexity,
    OperationMetrics,
    OperationResult,
    PolygonFeature,
    Position,
    Viewport,
    polygonal_parts,
)
from .validation import (
    combined_complexity,
    polygon_complexity,
    sanitize_feature,
    validate_feature,
)

LOGGER = logging.getLogger(__name__)

DistanceUnit = Literal["meters", "kilometers", "miles"]

_METERS_PER_UNIT: Dict[str, float] = {
    "meters": 1.0,
    "kilometers": 1000.0,
    "miles": 1609.344,
}

_GEOMETRY_ERRORS = (GEOSException, ValueError)

_TRANSFORMERS: Dict[int, Tuple[Transformer, Transformer]] = {}
_TRANSFORMERS_LOCK = Lock()


def _finish(
    operation: str,
    start: float,
    input_complexity: GeometryComplexity,
    result: Optional[PolygonFeature],
    errors: List[str],
    warnings: List[str],
    *,
    fallback_used: bool = False,
) -> OperationResult:
    metrics = OperationMetrics(
        operation_type=operation,
        execution_time_ms=elapsed_ms(start),
        input_complexity=input_complexity,
        output_complexity=polygon_complexity(result) if result is not None else None,
        had_errors=bool(errors),
        fallback_used=fallback_used,
    )
    LOGGER.debug(
        "%s finished in %.2f ms (in=%d vertices, out=%s, errors=%d)",
        operation,
        metrics.execution_time_ms,
        input_complexity.total_vertices,
        metrics.output_complexity.total_vertices if metrics.output_complexity else None,
        len(errors),
    )
    return OperationResult(result, metrics, errors, warnings)


def _to_valid_shape(
    feature: PolygonFeature, label: str, warnings: List[str]
) -> BaseGeometry:
    """Return a valid shapely geometry for ``feature``, repairing when needed."""

    shape = feature.to_shapely()
    if shape.is_valid:
        return shape
    reason = explain_validity(shape)
    parts = polygonal_parts(make_valid(shape))
    warnings.append(f"Repaired invalid {label} geometry ({reason})")
    LOGGER.debug("Repaired invalid %s geometry: %s", label, reason)
    if not parts:
        return Polygon()
    return unary_union(parts)


def union_polygons(features: Iterable[Any]) -> OperationResult:
    """Union any number of polygon features into one Polygon/MultiPolygon."""

    start = time.perf_counter()
    items = list(features or [])
    errors: List[str] = []
    warnings: List[str] = []
    input_complexity = combined_complexity(items)
    if not items:
        errors.append("No features provided for union")
        return _finish("union", start, input_complexity, None, errors, warnings)

    fallback_used = False
    shapes: List[BaseGeometry] = []
    for index, feature in enumerate(items):
        sanitized = sanitize_feature(feature)
        if sanitized is None:
            errors.append(f"Feature {index} failed sanitization and was skipped")
            fallback_used = True
            continue
        if len(items) == 1:
            return _finish(
                "union", start, input_complexity, sanitized, errors, warnings
            )
        shapes.append(_to_valid_shape(sanitized, f"feature {index}", warnings))

    if not shapes:
        errors.append("No valid features to union")
        return _finish(
            "union", start, input_complexity, None, errors, warnings,
            fallback_used=fallback_used,
        )

    try:
        merged = unary_union(shapes)
    except _GEOMETRY_ERRORS as exc:
        LOGGER.warning("Bulk union failed (%s); retrying pairwise", exc)
        merged, skipped = _pairwise_union(shapes)
        errors.extend(skipped)
        fallback_used = fallback_used or bool(skipped)

    result = PolygonFeature.from_shapely(merged)
    if result is None:
        errors.append("Union produced an empty geometry")
    return _finish(
        "union", start, input_complexity, result, errors, warnings,
        fallback_used=fallback_used,
    )


def _pairwise_union(shapes: Sequence[BaseGeometry]) -> Tuple[BaseGeometry, List[str]]:
    """Fold shapes one at a time, keeping the last good accumulator on failure."""

    skipped: List[str] = []
    accumulator = shapes[0]
    for index, shape in enumerate(shapes[1:], start=1):
        try:
            accumulator = accumulator.union(shape)
        except _GEOMETRY_ERRORS as exc:
            skipped.append(f"Union failed at feature {index}: {exc}")
    return accumulator, skipped


def difference(minuend: Any, subtrahend: Any) -> OperationResult:
    """Subtract ``subtrahend`` from ``minuend``.

    A fully covered minuend yields ``result=None`` with a warning and no
    errors, so callers can tell "nothing left" apart from "failed".
    """

    start = time.perf_counter()
    errors: List[str] = []
    warnings: List[str] = []
    input_complexity = combined_complexity([minuend, subtrahend])

    clean_minuend = sanitize_feature(minuend)
    if clean_minuend is None:
        errors.append("Minuend failed validation")
    clean_subtrahend = sanitize_feature(subtrahend)
    if clean_subtrahend is None:
        errors.append("Subtrahend failed validation")
    if clean_minuend is None or clean_subtrahend is None:
        return _finish("difference", start, input_complexity, None, errors, warnings)

    base = _to_valid_shape(clean_minuend, "minuend", warnings)
    cutter = _to_valid_shape(clean_subtrahend, "subtrahend", warnings)
    try:
        if cutter.covers(base):
            warnings.append("Minuend is fully covered by subtrahend")
            return _finish(
                "difference", start, input_complexity, None, errors, warnings
            )
        remainder = base.difference(cutter)
    except _GEOMETRY_ERRORS as exc:
        errors.append(f"Difference operation failed: {exc}")
        return _finish("difference", start, input_complexity, None, errors, warnings)

    result = PolygonFeature.from_shapely(remainder, clean_minuend.properties)
    if result is None:
        warnings.append("Difference is empty; minuend fully covered")
    return _finish("difference", start, input_complexity, result, errors, warnings)


def _parse_point(point: Any) -> Optional[Position]:
    if isinstance(point, Mapping):
        geometry = point.get("geometry") if point.get("type") == "Feature" else point
        if not isinstance(geometry, Mapping) or geometry.get("type") != "Point":
            return None
        point = geometry.get("coordinates")
    if not isinstance(point, (list, tuple)) or len(point) < 2:
        return None
    lon, lat = point[0], point[1]
    for value in (lon, lat):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value):
            return None
    return float(lon), float(lat)


def _utm_epsg(lon: float, lat: float) -> int:
    zone = int((lon + 180.0) // 6.0) + 1
    zone = max(1, min(zone, 60))
    return (32600 if lat >= 0 else 32700) + zone


def _local_transformers(lon: float, lat: float) -> Tuple[Transformer, Transformer]:
    """Return (to_metric, to_wgs84) transformers for the UTM zone around a point."""

    epsg = _utm_epsg(lon, lat)
    with _TRANSFORMERS_LOCK:
        cached = _TRANSFORMERS.get(epsg)
    if cached is not None:
        return cached
    try:
        target_crs = CRS.from_epsg(epsg)
    except Exception:
        target_crs = CRS.from_epsg(3857)
    wgs84 = CRS.from_epsg(4326)
    pair = (
        Transformer.from_crs(wgs84, target_crs, always_xy=True),
        Transformer.from_crs(target_crs, wgs84, always_xy=True),
    )
    with _TRANSFORMERS_LOCK:
        _TRANSFORMERS[epsg] = pair
    return pair


def buffer_point(
    point: Any, distance: float, unit: DistanceUnit = "meters"
) -> OperationResult:
    """Buffer a GPS point into a circular polygon of ``distance`` ``unit``."""

    start = time.perf_counter()
    errors: List[str] = []
    warnings: List[str] = []
    input_complexity = GeometryComplexity()

    position = _parse_point(point)
    if position is None:
        errors.append("Invalid point geometry provided")
    else:
        lon, lat = position
        if not (MIN_LONGITUDE <= lon <= MAX_LONGITUDE) or not (
            MIN_LATITUDE <= lat <= MAX_LATITUDE
        ):
            errors.append(f"Point coordinates out of range: [{lon}, {lat}]")
    if (
        isinstance(distance, bool)
        or not isinstance(distance, (int, float))
        or not math.isfinite(distance)
        or distance <= 0
    ):
        errors.append(f"Buffer distance must be positive, got {distance!r}")
    if unit not in _METERS_PER_UNIT:
        errors.append(f"Unsupported distance unit: {unit!r}")
    if errors:
        return _finish("buffer", start, input_complexity, None, errors, warnings)

    lon, lat = position
    radius_m = float(distance) * _METERS_PER_UNIT[unit]
    try:
        to_metric, to_wgs84 = _local_transformers(lon, lat)
        x, y = to_metric.transform(lon, lat)
        circle = Point(x, y).buffer(radius_m, quad_segs=BUFFER_QUAD_SEGMENTS)
        buffered = shapely_transform(to_wgs84.transform, circle)
    except (_GEOMETRY_ERRORS + (RuntimeError,)) as exc:
        errors.append(f"Buffer operation failed: {exc}")
        return _finish("buffer", start, input_complexity, None, errors, warnings)

    result = PolygonFeature.from_shapely(buffered)
    if result is None:
        errors.append("Buffer operation returned empty geometry")
        return _finish("buffer", start, input_complexity, None, errors, warnings)
    validation = validate_feature(result)
    if not validation.is_valid:
        errors.append("Buffer operation produced invalid geometry")
        errors.extend(validation.errors)
        return _finish("buffer", start, input_complexity, None, errors, warnings)
    warnings.extend(validation.warnings)
    return _finish("buffer", start, input_complexity, result, errors, warnings)


def vertex_count(geometry: BaseGeometry) -> int:
    return int(shapely.get_num_coordinates(geometry))


def simplify_with_budget(
    geometry: BaseGeometry,
    tolerance: float,
    max_vertices: Optional[int] = None,
) -> Tuple[BaseGeometry, float, bool]:
    """Simplify ``geometry`` and grow the tolerance until it fits ``max_vertices``.

    Returns the simplified geometry, the tolerance actually used and whether
    the tolerance had to be increased. Topology is preserved so polygons
    stay valid.
    """

    effective_tolerance = max(tolerance, 0.0)
    simplified = (
        geometry.simplify(effective_tolerance, preserve_topology=True)
        if effective_tolerance > 0
        else geometry
    )
    adjusted = False
    if max_vertices is None or vertex_count(simplified) <= max_vertices:
        return simplified, effective_tolerance, adjusted

    attempts = 0
    while vertex_count(simplified) > max_vertices and attempts < SIMPLIFY_MAX_ATTEMPTS:
        effective_tolerance = (
            effective_tolerance * 1.5 if effective_tolerance > 0 else 1e-5
        )
        simplified = geometry.simplify(effective_tolerance, preserve_topology=True)
        attempts += 1
        adjusted = True
    return simplified, effective_tolerance, adjusted


def simplify_feature(
    feature: Any, tolerance: float, max_vertices: Optional[int] = None
) -> OperationResult:
    """Topology-preserving simplification with an optional vertex budget."""

    start = time.perf_counter()
    errors: List[str] = []
    warnings: List[str] = []
    input_complexity = polygon_complexity(feature)

    clean = sanitize_feature(feature)
    if clean is None:
        errors.append("Feature failed validation")
        return _finish("simplify", start, input_complexity, None, errors, warnings)

    shape = _to_valid_shape(clean, "input", warnings)
    try:
        simplified, used_tolerance, adjusted = simplify_with_budget(
            shape, tolerance, max_vertices
        )
    except _GEOMETRY_ERRORS as exc:
        errors.append(f"Simplify operation failed: {exc}")
        return _finish("simplify", start, input_complexity, None, errors, warnings)

    if adjusted:
        warnings.append(f"Tolerance increased to {used_tolerance:g} to meet vertex budget")
    if max_vertices is not None and vertex_count(simplified) > max_vertices:
        warnings.append(
            f"Simplified geometry still exceeds vertex budget ({vertex_count(simplified)}"
            f" > {max_vertices})"
        )
    result = PolygonFeature.from_shapely(simplified, clean.properties)
    if result is None:
        errors.append("Simplification collapsed the geometry")
    return _finish("simplify", start, input_complexity, result, errors, warnings)


def viewport_polygon(bounds: Any) -> PolygonFeature:
    """Rectangle polygon for ``bounds``; raises ConfigurationError when invalid."""

    return Viewport.from_bounds(bounds).to_feature()


def world_polygon() -> PolygonFeature:
    return WORLD_VIEWPORT.to_feature()


__all__ = [
    "DistanceUnit",
    "buffer_point",
    "difference",
    "simplify_feature",
    "simplify_with_budget",
    "union_polygons",
    "vertex_count",
    "viewport_polygon",
    "world_polygon",
]
