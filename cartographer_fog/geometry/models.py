"""Dataclasses describing polygon features, viewports and operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from ..config import MAX_LATITUDE, MAX_LONGITUDE, MIN_LATITUDE, MIN_LONGITUDE
from ..errors import ConfigurationError

GeometryKind = Literal["Polygon", "MultiPolygon"]
ComplexityLevel = Literal["LOW", "MEDIUM", "HIGH"]

Position = Tuple[float, float]
Ring = Tuple[Position, ...]
PolygonCoords = Tuple[Ring, ...]
Bounds = Tuple[float, float, float, float]

POLYGON: GeometryKind = "Polygon"
MULTI_POLYGON: GeometryKind = "MultiPolygon"


@dataclass(slots=True)
class PolygonFeature:
    """A validated Polygon or MultiPolygon feature.

    ``coordinates`` mirrors the GeoJSON nesting for the given ``kind``: a
    tuple of rings for ``Polygon`` and a tuple of polygons for
    ``MultiPolygon``. Instances are only built from input that passed
    validation, so downstream code can branch on ``kind`` exhaustively.
    """

    kind: GeometryKind
    coordinates: Tuple[Any, ...]
    properties: Dict[str, Any] = field(default_factory=dict)

    def polygons(self) -> Iterator[PolygonCoords]:
        """Yield each polygon's rings regardless of ``kind``."""

        if self.kind == POLYGON:
            yield self.coordinates
        else:
            yield from self.coordinates

    def rings(self) -> Iterator[Ring]:
        for polygon in self.polygons():
            yield from polygon

    @property
    def vertex_count(self) -> int:
        return sum(len(ring) for ring in self.rings())

    @property
    def bounds(self) -> Bounds:
        xs = [pt[0] for ring in self.rings() for pt in ring]
        ys = [pt[1] for ring in self.rings() for pt in ring]
        return min(xs), min(ys), max(xs), max(ys)

    def to_geojson(self) -> Dict[str, Any]:
        """Return a GeoJSON Feature mapping with list-based coordinates."""

        if self.kind == POLYGON:
            coords: List[Any] = _rings_to_lists(self.coordinates)
        else:
            coords = [_rings_to_lists(polygon) for polygon in self.coordinates]
        return {
            "type": "Feature",
            "properties": dict(self.properties),
            "geometry": {"type": self.kind, "coordinates": coords},
        }

    def to_shapely(self) -> BaseGeometry:
        if self.kind == POLYGON:
            return _polygon_from_rings(self.coordinates)
        return MultiPolygon([_polygon_from_rings(poly) for poly in self.coordinates])

    @classmethod
    def from_shapely(
        cls,
        geometry: BaseGeometry,
        properties: Optional[Dict[str, Any]] = None,
    ) -> Optional["PolygonFeature"]:
        """Build a feature from the polygonal parts of a shapely geometry.

        Returns ``None`` when nothing polygonal and non-empty remains.
        """

        parts = [orient(poly, sign=1.0) for poly in polygonal_parts(geometry)]
        if not parts:
            return None
        props = dict(properties or {})
        if len(parts) == 1:
            return cls(POLYGON, _polygon_to_rings(parts[0]), props)
        return cls(
            MULTI_POLYGON, tuple(_polygon_to_rings(poly) for poly in parts), props
        )


def polygonal_parts(geometry: BaseGeometry | None) -> List[Polygon]:
    """Flatten any shapely geometry into its non-empty polygons."""

    if geometry is None or geometry.is_empty:
        return []
    if isinstance(geometry, Polygon):
        return [geometry]
    if isinstance(geometry, MultiPolygon):
        return [poly for poly in geometry.geoms if not poly.is_empty]
    parts: List[Polygon] = []
    for sub in getattr(geometry, "geoms", ()):
        parts.extend(polygonal_parts(sub))
    return parts


def _polygon_from_rings(rings: PolygonCoords) -> Polygon:
    shell, *holes = rings
    return Polygon(shell, holes)


def _polygon_to_rings(polygon: Polygon) -> PolygonCoords:
    rings = [polygon.exterior, *polygon.interiors]
    return tuple(
        tuple((float(x), float(y)) for x, y, *_ in ring.coords) for ring in rings
    )


def _rings_to_lists(rings: PolygonCoords) -> List[List[List[float]]]:
    return [[[pt[0], pt[1]] for pt in ring] for ring in rings]


@dataclass(slots=True, frozen=True)
class Viewport:
    """Axis-aligned bounding box of the visible map area."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def from_bounds(cls, bounds: Any) -> "Viewport":
        """Parse ``[min_lon, min_lat, max_lon, max_lat]`` or raise ConfigurationError."""

        if isinstance(bounds, Viewport):
            return bounds
        try:
            values = [float(v) for v in bounds]
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid viewport bounds: {bounds!r}") from exc
        if len(values) != 4 or not all(math.isfinite(v) for v in values):
            raise ConfigurationError(f"Invalid viewport bounds: {bounds!r}")
        min_lon, min_lat, max_lon, max_lat = values
        if min_lon >= max_lon or min_lat >= max_lat:
            raise ConfigurationError(
                f"Invalid viewport bounds: [{min_lon}, {min_lat}, {max_lon}, {max_lat}]"
            )
        if (
            min_lon < MIN_LONGITUDE
            or max_lon > MAX_LONGITUDE
            or min_lat < MIN_LATITUDE
            or max_lat > MAX_LATITUDE
        ):
            raise ConfigurationError(
                "Viewport bounds out of valid range: "
                f"[{min_lon}, {min_lat}, {max_lon}, {max_lat}]"
            )
        return cls(min_lon, min_lat, max_lon, max_lat)

    @property
    def bounds(self) -> Bounds:
        return self.min_lon, self.min_lat, self.max_lon, self.max_lat

    @property
    def width(self) -> float:
        return self.max_lon - self.min_lon

    @property
    def height(self) -> float:
        return self.max_lat - self.min_lat

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Position:
        return (self.min_lon + self.max_lon) / 2.0, (self.min_lat + self.max_lat) / 2.0

    def intersects(self, bounds: Bounds) -> bool:
        other_min_lon, other_min_lat, other_max_lon, other_max_lat = bounds
        return not (
            other_max_lon < self.min_lon
            or other_min_lon > self.max_lon
            or other_max_lat < self.min_lat
            or other_min_lat > self.max_lat
        )

    def to_feature(self, properties: Optional[Dict[str, Any]] = None) -> PolygonFeature:
        """Return the viewport rectangle as a counter-clockwise polygon."""

        ring: Ring = (
            (self.min_lon, self.min_lat),
            (self.max_lon, self.min_lat),
            (self.max_lon, self.max_lat),
            (self.min_lon, self.max_lat),
            (self.min_lon, self.min_lat),
        )
        return PolygonFeature(POLYGON, (ring,), dict(properties or {}))


WORLD_VIEWPORT = Viewport(MIN_LONGITUDE, MIN_LATITUDE, MAX_LONGITUDE, MAX_LATITUDE)


@dataclass(slots=True)
class GeometryComplexity:
    """Vertex statistics used for performance decisions and telemetry."""

    total_vertices: int = 0
    ring_count: int = 0
    max_ring_vertices: int = 0
    average_ring_vertices: float = 0.0
    complexity_level: ComplexityLevel = "LOW"


@dataclass(slots=True)
class ValidationResult:
    """Outcome of structural validation for a single feature."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    complexity: Optional[GeometryComplexity] = None


@dataclass(slots=True)
class OperationMetrics:
    """Timing and complexity for one buffer/union/difference call."""

    operation_type: str
    execution_time_ms: float
    input_complexity: GeometryComplexity
    output_complexity: Optional[GeometryComplexity] = None
    had_errors: bool = False
    fallback_used: bool = False


@dataclass(slots=True)
class OperationResult:
    """Result wrapper returned by every geometry operation."""

    result: Optional[PolygonFeature]
    metrics: OperationMetrics
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result is not None and not self.errors
