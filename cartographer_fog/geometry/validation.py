"""Structural validation, repair and complexity metrics for polygon features."""

from __future__ import annotations

import logging
import math
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from ..config import (
    COMPLEXITY_HIGH_VERTICES,
    COMPLEXITY_MEDIUM_VERTICES,
    MAX_LATITUDE,
    MAX_LONGITUDE,
    MIN_LATITUDE,
    MIN_LONGITUDE,
    RING_VERTEX_WARNING,
    SANITIZE_PRECISION,
    SANITIZE_TOLERANCE_DEG,
)
from ..errors import GeometryValidationError
from .models import (
    MULTI_POLYGON,
    POLYGON,
    ComplexityLevel,
    GeometryComplexity,
    PolygonCoords,
    PolygonFeature,
    Position,
    Ring,
    ValidationResult,
)

LOGGER = logging.getLogger(__name__)

_POLYGON_KINDS = (POLYGON, MULTI_POLYGON)


def _as_mapping(feature: Any) -> Any:
    if isinstance(feature, PolygonFeature):
        return feature.to_geojson()
    return feature


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _ring_context(ring_index: int, polygon_index: Optional[int]) -> str:
    if polygon_index is None:
        return f"ring {ring_index}"
    return f"polygon {polygon_index}, ring {ring_index}"


def validate_ring(
    ring: Any, ring_index: int = 0, polygon_index: Optional[int] = None
) -> Tuple[List[str], List[str]]:
    """Return ``(errors, warnings)`` for a single coordinate ring."""

    errors: List[str] = []
    warnings: List[str] = []
    context = _ring_context(ring_index, polygon_index)

    if not _is_sequence(ring):
        errors.append(f"Ring at {context} is not an array")
        return errors, warnings
    if len(ring) < 4:
        errors.append(
            f"Ring at {context} has insufficient coordinates "
            f"({len(ring)}, minimum 4 required)"
        )
        return errors, warnings

    for idx, coord in enumerate(ring):
        if not _is_sequence(coord) or len(coord) != 2:
            errors.append(f"Invalid coordinate format at {context}, coordinate {idx}")
            continue
        lon, lat = coord
        if not _is_number(lon) or not _is_number(lat):
            errors.append(
                f"Non-numeric or non-finite coordinate at {context}, "
                f"coordinate {idx}: [{lon!r}, {lat!r}]"
            )
            continue
        if lon < MIN_LONGITUDE or lon > MAX_LONGITUDE:
            errors.append(
                f"Longitude out of range at {context}, coordinate {idx}: {lon} "
                "(must be -180 to 180)"
            )
        if lat < MIN_LATITUDE or lat > MAX_LATITUDE:
            errors.append(
                f"Latitude out of range at {context}, coordinate {idx}: {lat} "
                "(must be -90 to 90)"
            )

    if not errors:
        first, last = ring[0], ring[-1]
        if first[0] != last[0] or first[1] != last[1]:
            errors.append(
                f"Ring at {context} is not closed "
                f"(first: [{first[0]}, {first[1]}], last: [{last[0]}, {last[1]}])"
            )

    if len(ring) > RING_VERTEX_WARNING:
        warnings.append(
            f"Ring at {context} has {len(ring)} vertices, which may impact performance"
        )
    return errors, warnings


def validate_feature(feature: Any) -> ValidationResult:
    """Validate a GeoJSON Feature (or PolygonFeature) holding polygon geometry."""

    feature = _as_mapping(feature)
    errors: List[str] = []
    warnings: List[str] = []

    if feature is None:
        return ValidationResult(False, ["Feature is null"], warnings)
    if not isinstance(feature, Mapping):
        return ValidationResult(
            False, [f"Expected a mapping, got {type(feature).__name__}"], warnings
        )
    if feature.get("type") != "Feature":
        errors.append(f"Expected Feature type, got {feature.get('type')}")

    geometry = feature.get("geometry")
    if not isinstance(geometry, Mapping):
        errors.append("Missing geometry property")
        return ValidationResult(False, errors, warnings)
    kind = geometry.get("type")
    if kind not in _POLYGON_KINDS:
        errors.append(f"Unsupported geometry type: {kind}")
        return ValidationResult(False, errors, warnings)
    coordinates = geometry.get("coordinates")
    if not _is_sequence(coordinates):
        errors.append("Invalid or missing coordinates")
        return ValidationResult(False, errors, warnings)
    if len(coordinates) == 0:
        errors.append("Empty coordinates array")
        return ValidationResult(False, errors, warnings)

    if kind == POLYGON:
        for ring_index, ring in enumerate(coordinates):
            ring_errors, ring_warnings = validate_ring(ring, ring_index)
            errors.extend(ring_errors)
            warnings.extend(ring_warnings)
    else:
        for polygon_index, rings in enumerate(coordinates):
            if not _is_sequence(rings) or len(rings) == 0:
                errors.append(f"Invalid polygon at index {polygon_index} in MultiPolygon")
                continue
            for ring_index, ring in enumerate(rings):
                ring_errors, ring_warnings = validate_ring(ring, ring_index, polygon_index)
                errors.extend(ring_errors)
                warnings.extend(ring_warnings)

    if errors:
        return ValidationResult(False, errors, warnings)

    complexity = polygon_complexity(feature)
    if complexity.complexity_level == "HIGH":
        warnings.append(
            f"High complexity geometry with {complexity.total_vertices} vertices "
            "may impact performance"
        )
    return ValidationResult(True, errors, warnings, complexity)


def is_valid_polygon_feature(feature: Any) -> bool:
    return validate_feature(feature).is_valid


def _complexity_level(total_vertices: int) -> ComplexityLevel:
    if total_vertices > COMPLEXITY_HIGH_VERTICES:
        return "HIGH"
    if total_vertices > COMPLEXITY_MEDIUM_VERTICES:
        return "MEDIUM"
    return "LOW"


def polygon_complexity(feature: Any) -> GeometryComplexity:
    """Vertex and ring statistics; malformed input yields an empty LOW result."""

    if isinstance(feature, PolygonFeature):
        ring_sizes = [len(ring) for ring in feature.rings()]
    else:
        ring_sizes = _raw_ring_sizes(feature)
    if not ring_sizes:
        return GeometryComplexity()
    total = sum(ring_sizes)
    return GeometryComplexity(
        total_vertices=total,
        ring_count=len(ring_sizes),
        max_ring_vertices=max(ring_sizes),
        average_ring_vertices=total / len(ring_sizes),
        complexity_level=_complexity_level(total),
    )


def combined_complexity(features: Sequence[Any]) -> GeometryComplexity:
    """Aggregate complexity across several features (e.g. union inputs)."""

    parts = [polygon_complexity(feature) for feature in features]
    ring_count = sum(part.ring_count for part in parts)
    if ring_count == 0:
        return GeometryComplexity()
    total = sum(part.total_vertices for part in parts)
    return GeometryComplexity(
        total_vertices=total,
        ring_count=ring_count,
        max_ring_vertices=max(part.max_ring_vertices for part in parts),
        average_ring_vertices=total / ring_count,
        complexity_level=_complexity_level(total),
    )


def _raw_ring_sizes(feature: Any) -> List[int]:
    if not isinstance(feature, Mapping):
        return []
    geometry = feature.get("geometry")
    if not isinstance(geometry, Mapping):
        return []
    coordinates = geometry.get("coordinates")
    if not _is_sequence(coordinates):
        return []
    kind = geometry.get("type")
    if kind == POLYGON:
        polygons: Sequence[Any] = [coordinates]
    elif kind == MULTI_POLYGON:
        polygons = coordinates
    else:
        return []
    sizes: List[int] = []
    for rings in polygons:
        if not _is_sequence(rings):
            continue
        sizes.extend(len(ring) for ring in rings if _is_sequence(ring))
    return sizes


def parse_feature(feature: Any) -> PolygonFeature:
    """Convert validated GeoJSON into a PolygonFeature or raise GeometryValidationError."""

    if isinstance(feature, PolygonFeature):
        return feature
    result = validate_feature(feature)
    if not result.is_valid:
        raise GeometryValidationError("; ".join(result.errors))
    geometry = feature["geometry"]
    properties = feature.get("properties")
    props = dict(properties) if isinstance(properties, Mapping) else {}
    if geometry["type"] == POLYGON:
        return PolygonFeature(POLYGON, _freeze_polygon(geometry["coordinates"]), props)
    return PolygonFeature(
        MULTI_POLYGON,
        tuple(_freeze_polygon(rings) for rings in geometry["coordinates"]),
        props,
    )


def _freeze_polygon(rings: Sequence[Sequence[Sequence[float]]]) -> PolygonCoords:
    return tuple(tuple((float(pt[0]), float(pt[1])) for pt in ring) for ring in rings)


def sanitize_ring(ring: Any) -> Optional[Ring]:
    """Round, de-duplicate and re-close a ring.

    Returns ``None`` when a position is malformed. The caller drops rings
    shorter than four positions.
    """

    if not _is_sequence(ring):
        return None
    cleaned: List[Position] = []
    for coord in ring:
        if not _is_sequence(coord) or len(coord) < 2:
            return None
        lon, lat = coord[0], coord[1]
        if not _is_number(lon) or not _is_number(lat):
            return None
        point = (
            round(float(lon), SANITIZE_PRECISION) + 0.0,
            round(float(lat), SANITIZE_PRECISION) + 0.0,
        )
        if cleaned:
            prev = cleaned[-1]
            if (
                abs(point[0] - prev[0]) <= SANITIZE_TOLERANCE_DEG
                and abs(point[1] - prev[1]) <= SANITIZE_TOLERANCE_DEG
            ):
                continue
        cleaned.append(point)
    if len(cleaned) >= 3 and cleaned[0] != cleaned[-1]:
        cleaned.append(cleaned[0])
    return tuple(cleaned)


def _sanitize_polygon(rings: Any) -> Optional[PolygonCoords]:
    if not _is_sequence(rings) or len(rings) == 0:
        return None
    kept: List[Ring] = []
    for ring_index, ring in enumerate(rings):
        cleaned = sanitize_ring(ring)
        if cleaned is None or len(cleaned) < 4:
            if ring_index == 0:
                # Holes cannot outlive their exterior ring.
                return None
            continue
        kept.append(cleaned)
    return tuple(kept)


def sanitize_feature(feature: Any) -> Optional[PolygonFeature]:
    """Repair a polygon feature; return ``None`` if it is still invalid afterwards."""

    try:
        mapping = _as_mapping(feature)
        if not isinstance(mapping, Mapping) or mapping.get("type") != "Feature":
            LOGGER.debug("Cannot sanitize non-Feature input")
            return None
        geometry = mapping.get("geometry")
        if not isinstance(geometry, Mapping):
            return None
        kind = geometry.get("type")
        coordinates = geometry.get("coordinates")
        if kind not in _POLYGON_KINDS or not _is_sequence(coordinates) or not coordinates:
            LOGGER.debug("Cannot sanitize geometry of type %s", kind)
            return None

        polygons = [coordinates] if kind == POLYGON else list(coordinates)
        cleaned = [rings for rings in map(_sanitize_polygon, polygons) if rings]
        if not cleaned:
            LOGGER.debug("No valid rings remaining after sanitization")
            return None

        properties = mapping.get("properties")
        props = dict(properties) if isinstance(properties, Mapping) else {}
        if kind == POLYGON:
            sanitized = PolygonFeature(POLYGON, cleaned[0], props)
        else:
            sanitized = PolygonFeature(MULTI_POLYGON, tuple(cleaned), props)

        result = validate_feature(sanitized)
        if not result.is_valid:
            LOGGER.debug("Sanitized geometry still invalid: %s", result.errors)
            return None
        return sanitized
    except Exception as exc:  # pragma: no cover - sanitization must not raise
        LOGGER.error("Geometry sanitization failed: %s", exc, exc_info=True)
        return None


def debug_geometry(feature: Any, name: str) -> None:
    """Log structural details of ``feature`` at debug level."""

    if not LOGGER.isEnabledFor(logging.DEBUG):
        return
    mapping = _as_mapping(feature)
    geometry = mapping.get("geometry") if isinstance(mapping, Mapping) else None
    coordinates = geometry.get("coordinates") if isinstance(geometry, Mapping) else None
    info = {
        "type": mapping.get("type") if isinstance(mapping, Mapping) else None,
        "geometry_type": geometry.get("type") if isinstance(geometry, Mapping) else None,
        "ring_count": len(coordinates) if _is_sequence(coordinates) else None,
        "is_valid": is_valid_polygon_feature(mapping),
    }
    complexity = polygon_complexity(mapping)
    LOGGER.debug(
        "%s geometry debug: %s vertices=%d rings=%d level=%s",
        name,
        info,
        complexity.total_vertices,
        complexity.ring_count,
        complexity.complexity_level,
    )


__all__ = [
    "combined_complexity",
    "debug_geometry",
    "is_valid_polygon_feature",
    "parse_feature",
    "polygon_complexity",
    "sanitize_feature",
    "sanitize_ring",
    "validate_feature",
    "validate_ring",
]
