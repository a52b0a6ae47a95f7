"""Polygon geometry handling for fog computation.

This module provides the polygon feature model, structural validation and
repair, and the boolean/buffer operations used to carve revealed areas out
of the fog.
"""

from .models import (
    GeometryComplexity,
    OperationMetrics,
    OperationResult,
    PolygonFeature,
    ValidationResult,
    Viewport,
    WORLD_VIEWPORT,
)
from .validation import (
    debug_geometry,
    is_valid_polygon_feature,
    parse_feature,
    polygon_complexity,
    sanitize_feature,
    validate_feature,
    validate_ring,
)
from .operations import (
    buffer_point,
    difference,
    simplify_feature,
    union_polygons,
    viewport_polygon,
    world_polygon,
)

__all__ = [
    "GeometryComplexity",
    "OperationMetrics",
    "OperationResult",
    "PolygonFeature",
    "ValidationResult",
    "Viewport",
    "WORLD_VIEWPORT",
    "debug_geometry",
    "is_valid_polygon_feature",
    "parse_feature",
    "polygon_complexity",
    "sanitize_feature",
    "validate_feature",
    "validate_ring",
    "buffer_point",
    "difference",
    "simplify_feature",
    "union_polygons",
    "viewport_polygon",
    "world_polygon",
]
