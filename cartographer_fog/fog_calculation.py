"""Fog calculation with tiered fallback.

The calculator composes the spatial index, geometry operations, fog cache
and circuit breaker:

1. primary: viewport-optimised union/difference of the revealed areas,
   guarded by the breaker and cached;
2. secondary: the bare viewport rectangle;
3. tertiary: world fog when there are no usable bounds or the fallback
   strategy asks for it;
4. emergency: world fog, built from constants, when anything above raised.

:meth:`FogCalculator.calculate` never raises.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
import inspect
import logging
import time
from threading import Lock
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from .circuit_breaker import FOG_CALCULATION, GEOMETRY_OPERATION, CircuitBreaker
from .config import (
    FAST_MODE_MAX_VERTICES,
    FAST_MODE_TOLERANCE_DEG,
    FOG_CACHE_ENABLED,
    PERFORMANCE_MODERATE_MS,
    PERFORMANCE_SLOW_MS,
)
from .diagnostics import SessionNotices
from .errors import (
    CircuitOpenError,
    ConfigurationError,
    FogEngineError,
    GeometryOperationError,
    GeometryValidationError,
)
from .fog_cache import CacheSignature, FogCache
from .geometry.models import WORLD_VIEWPORT, GeometryComplexity, PolygonFeature, Viewport
from .geometry.operations import difference, simplify_feature, union_polygons
from .geometry.validation import combined_complexity
from .spatial_index import SpatialIndex
from .utils import content_digest, elapsed_ms

LOGGER = logging.getLogger(__name__)

PerformanceMode = Literal["fast", "accurate"]
FallbackStrategy = Literal["viewport", "world", "none"]
PerformanceLevel = Literal["FAST", "MODERATE", "SLOW"]
OperationType = Literal["viewport", "world"]
Tier = Literal["primary", "secondary", "tertiary", "emergency"]

_PERFORMANCE_MODES = ("fast", "accurate")
_FALLBACK_STRATEGIES = ("viewport", "world", "none")

# Cache digest used when the caller reveals nothing.
_NOTHING_REVEALED = "nothing-revealed"


@dataclass(slots=True)
class FogCalculationOptions:
    """Per-call options. ``viewport_bounds`` is ``[min_lon, min_lat, max_lon, max_lat]``."""

    viewport_bounds: Optional[Sequence[float]] = None
    use_viewport_optimization: bool = True
    performance_mode: PerformanceMode = "accurate"
    fallback_strategy: FallbackStrategy = "viewport"
    zoom_level: Optional[float] = None
    use_cache: bool = True


@dataclass(slots=True)
class FogMetrics:
    geometry_complexity: GeometryComplexity
    operation_type: OperationType
    tier: Tier
    had_errors: bool
    fallback_used: bool
    execution_time_ms: float
    performance_level: PerformanceLevel
    input_vertices: int = 0
    output_vertices: int = 0
    cache_hit: bool = False
    areas_considered: int = 0


@dataclass(slots=True)
class FogResult:
    """Renderable fog plus diagnostics for one calculation."""

    fog_geojson: Dict[str, Any]
    calculation_time_ms: float
    metrics: FogMetrics
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def features(self) -> List[Dict[str, Any]]:
        return self.fog_geojson["features"]


@dataclass(slots=True)
class _PrimaryOutcome:
    fog: List[PolygonFeature]
    warnings: List[str]
    input_vertices: int
    areas_considered: int


def get_default_options(bounds: Optional[Sequence[float]] = None) -> FogCalculationOptions:
    """Defaults; viewport optimisation is enabled only when bounds are supplied."""

    return FogCalculationOptions(
        viewport_bounds=tuple(bounds) if bounds is not None else None,
        use_viewport_optimization=bounds is not None,
        performance_mode="accurate",
        fallback_strategy="viewport",
    )


def performance_level(execution_time_ms: float) -> PerformanceLevel:
    if execution_time_ms > PERFORMANCE_SLOW_MS:
        return "SLOW"
    if execution_time_ms > PERFORMANCE_MODERATE_MS:
        return "MODERATE"
    return "FAST"


def create_world_fog_polygon() -> Dict[str, Any]:
    return WORLD_VIEWPORT.to_feature().to_geojson()


def create_viewport_fog_polygon(bounds: Any) -> Dict[str, Any]:
    """Viewport rectangle as a GeoJSON Feature; raises ConfigurationError."""

    return Viewport.from_bounds(bounds).to_feature().to_geojson()


def _feature_collection(features: Sequence[PolygonFeature]) -> Dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [feature.to_geojson() for feature in features],
    }


def _coerce_areas(revealed_areas: Any) -> List[Any]:
    """Flatten the accepted revealed-area containers into a list of features."""

    if isinstance(revealed_areas, PolygonFeature):
        return [revealed_areas]
    if isinstance(revealed_areas, Mapping):
        kind = revealed_areas.get("type")
        if kind == "FeatureCollection":
            features = revealed_areas.get("features") or []
            if not isinstance(features, (list, tuple)):
                raise GeometryValidationError("FeatureCollection.features must be a list")
            return list(features)
        if kind == "Feature":
            return [revealed_areas]
        raise GeometryValidationError(f"Unsupported revealed area type: {kind}")
    if isinstance(revealed_areas, (list, tuple)):
        return list(revealed_areas)
    raise GeometryValidationError(
        f"Unsupported revealed area container: {type(revealed_areas).__name__}"
    )


class FogCalculator:
    """Owns the cache, breakers and spatial index used for fog calculations."""

    def __init__(
        self,
        cache: Optional[FogCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        index: Optional[SpatialIndex] = None,
        notices: Optional[SessionNotices] = None,
        geometry_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.notices = notices or SessionNotices(LOGGER)
        self.cache = cache if cache is not None else FogCache()
        self.breaker = (
            breaker
            if breaker is not None
            else CircuitBreaker(FOG_CALCULATION, notices=self.notices)
        )
        self.geometry_breaker = (
            geometry_breaker
            if geometry_breaker is not None
            else CircuitBreaker(GEOMETRY_OPERATION, notices=self.notices)
        )
        self.index = index if index is not None else SpatialIndex()
        self._areas_digest: Optional[str] = None
        self._lock = Lock()

    def reset(self) -> None:
        """Restore a pristine state (primarily for testing)."""

        self.cache.clear()
        self.cache.invalidate()
        self.breaker.reset()
        self.geometry_breaker.reset()
        self.index.clear()
        self.notices.reset()
        with self._lock:
            self._areas_digest = None

    def reveal(self, area: Any) -> Optional[str]:
        """Add a newly revealed area and invalidate cached fog."""

        evicted_before = self.index.memory_stats().evicted_entries
        area_id = self.index.insert(area)
        if area_id is not None:
            with self._lock:
                self._areas_digest = None
            self.cache.invalidate()
        evicted = self.index.memory_stats().evicted_entries - evicted_before
        if evicted > 0:
            self._report_evictions(evicted, [])
        return area_id

    def load(self, areas: Any) -> int:
        """Replace the indexed areas; returns the number indexed."""

        features = _coerce_areas(areas)
        digest = self._digest(features)
        inserted = self.index.rebuild(features)
        with self._lock:
            self._areas_digest = digest
        self.cache.invalidate()
        return len(inserted)

    @staticmethod
    def _digest(features: Sequence[Any]) -> Optional[str]:
        payload = [f.to_geojson() if isinstance(f, PolygonFeature) else f for f in features]
        try:
            return content_digest(payload)
        except (TypeError, ValueError):
            return None

    def _report_evictions(self, evicted: int, warnings: List[str]) -> None:
        # Forget the digest so the next call that supplies the areas re-indexes them.
        with self._lock:
            self._areas_digest = None
        warnings.append(
            f"Evicted {evicted} revealed area(s) to stay within the index vertex limit"
        )
        self.notices.notice(
            "index-evictions",
            logging.WARNING,
            "Spatial index evicted %d revealed area(s); fog may hide visited ground",
            evicted,
        )

    def _sync_areas(self, revealed_areas: Any, warnings: List[str]) -> int:
        """Index ``revealed_areas`` when they changed; return the number evicted."""

        features = _coerce_areas(revealed_areas)
        digest = self._digest(features)
        with self._lock:
            unchanged = digest is not None and digest == self._areas_digest
        if unchanged:
            return 0
        evicted_before = self.index.memory_stats().evicted_entries
        inserted = self.index.rebuild(features)
        with self._lock:
            self._areas_digest = digest
        self.cache.invalidate()
        skipped = len(features) - len(inserted)
        if skipped > 0:
            warnings.append(f"Skipped {skipped} revealed area(s) that failed validation")
            self.notices.notice(
                "invalid-revealed-areas",
                logging.WARNING,
                "Skipped %d revealed area(s) that failed validation",
                skipped,
            )
        evicted = self.index.memory_stats().evicted_entries - evicted_before
        if evicted > 0:
            self._report_evictions(evicted, warnings)
        return evicted

    def calculate(
        self,
        revealed_areas: Any = None,
        options: Optional[FogCalculationOptions] = None,
    ) -> FogResult:
        """Compute fog for ``options.viewport_bounds``.

        ``revealed_areas`` may be a Feature, a FeatureCollection, a list of
        Features or PolygonFeatures. ``None`` means nothing is revealed and
        yields full fog; use :meth:`calculate_indexed` to compute against the
        areas added through :meth:`reveal` or :meth:`load`.
        """

        return self._calculate(revealed_areas, options, upstream_error=None)

    def calculate_indexed(self, options: Optional[FogCalculationOptions] = None) -> FogResult:
        """Compute fog against the areas currently held by the spatial index."""

        return self._calculate(None, options, upstream_error=None, use_index=True)

    async def calculate_from_store(
        self, store: Any, options: Optional[FogCalculationOptions] = None
    ) -> FogResult:
        """Read revealed areas from ``store.list()`` (sync or async) and calculate."""

        try:
            listed = store.list()
            if inspect.isawaitable(listed):
                listed = await listed
            areas = list(listed or [])
        except Exception as exc:
            self.notices.notice(
                ("store-failure", type(exc).__name__),
                logging.WARNING,
                "Revealed area store failed: %s",
                exc,
            )
            return self._calculate(
                None, options, upstream_error=f"Revealed area store failed: {exc}"
            )
        return self._calculate(areas, options, upstream_error=None)

    def _calculate(
        self,
        revealed_areas: Any,
        options: Optional[FogCalculationOptions],
        upstream_error: Optional[str],
        use_index: bool = False,
    ) -> FogResult:
        start = time.perf_counter()
        opts = options or get_default_options()
        errors: List[str] = []
        warnings: List[str] = []
        bounds_supplied = opts.viewport_bounds is not None
        try:
            mode, strategy = self._normalise_options(opts, warnings)
            primary_allowed = upstream_error is None
            if upstream_error is not None:
                errors.append(upstream_error)
            nothing_revealed = revealed_areas is None and not use_index
            evicted = 0
            if revealed_areas is not None:
                try:
                    evicted = self._sync_areas(revealed_areas, warnings)
                except FogEngineError as exc:
                    errors.append(f"Invalid revealed areas: {exc}")
                    primary_allowed = False

            viewport = self._usable_viewport(opts, errors)

            # Primary
            if viewport is not None and opts.use_viewport_optimization and primary_allowed:
                result = self._try_primary(
                    viewport, opts, mode, start, errors, warnings,
                    nothing_revealed=nothing_revealed,
                    evicted=evicted,
                )
                if result is not None:
                    return result

            # Secondary
            if viewport is not None:
                if not opts.use_viewport_optimization and not nothing_revealed:
                    warnings.append(
                        "Viewport optimization disabled; revealed areas were not subtracted"
                    )
                warnings.append("Used simplified viewport fog as fallback")
                LOGGER.debug("Using simplified viewport fog")
                return self._result(
                    [viewport.to_feature()],
                    "secondary",
                    "viewport",
                    start,
                    errors,
                    warnings,
                    fallback_used=True,
                )

            # Tertiary
            if strategy == "none" and not bounds_supplied:
                warnings.append(
                    "Used emergency world fog (no viewport bounds, no fallback strategy)"
                )
                return self._result(
                    [WORLD_VIEWPORT.to_feature()],
                    "tertiary",
                    "world",
                    start,
                    errors,
                    warnings,
                    fallback_used=True,
                    had_errors=True,
                )
            if strategy == "none":
                raise FogEngineError(
                    "Fog calculation failed and no fallback strategy available"
                )
            if bounds_supplied:
                warnings.append("Used world fog as final fallback")
            else:
                warnings.append("Used world fog (no viewport bounds available)")
            return self._result(
                [WORLD_VIEWPORT.to_feature()],
                "tertiary",
                "world",
                start,
                errors,
                warnings,
                fallback_used=bounds_supplied,
            )
        except Exception as exc:
            # Emergency tier: constant geometry only.
            self.notices.notice(
                ("emergency", type(exc).__name__),
                logging.ERROR,
                "Critical error in fog calculation: %s",
                exc,
            )
            execution_ms = elapsed_ms(start)
            world = WORLD_VIEWPORT.to_feature()
            return FogResult(
                fog_geojson=_feature_collection([world]),
                calculation_time_ms=execution_ms,
                metrics=FogMetrics(
                    geometry_complexity=GeometryComplexity(
                        total_vertices=5,
                        ring_count=1,
                        max_ring_vertices=5,
                        average_ring_vertices=5.0,
                    ),
                    operation_type="world",
                    tier="emergency",
                    had_errors=True,
                    fallback_used=True,
                    execution_time_ms=execution_ms,
                    performance_level="FAST",
                    output_vertices=5,
                ),
                errors=errors + [f"Critical fog calculation error: {exc}"],
                warnings=warnings + ["Emergency fallback to world fog"],
            )

    @staticmethod
    def _normalise_options(
        opts: FogCalculationOptions, warnings: List[str]
    ) -> Tuple[PerformanceMode, FallbackStrategy]:
        mode = opts.performance_mode
        if mode not in _PERFORMANCE_MODES:
            warnings.append(f"Unknown performance mode {mode!r}; using 'accurate'")
            mode = "accurate"
        strategy = opts.fallback_strategy
        if strategy not in _FALLBACK_STRATEGIES:
            warnings.append(f"Unknown fallback strategy {strategy!r}; using 'viewport'")
            strategy = "viewport"
        return mode, strategy

    def _usable_viewport(
        self, opts: FogCalculationOptions, errors: List[str]
    ) -> Optional[Viewport]:
        if opts.viewport_bounds is None:
            return None
        try:
            return Viewport.from_bounds(opts.viewport_bounds)
        except ConfigurationError as exc:
            errors.append(str(exc))
            self.notices.notice(
                "invalid-viewport", logging.WARNING, "Ignoring viewport: %s", exc
            )
            return None

    def _try_primary(
        self,
        viewport: Viewport,
        opts: FogCalculationOptions,
        mode: PerformanceMode,
        start: float,
        errors: List[str],
        warnings: List[str],
        *,
        nothing_revealed: bool,
        evicted: int,
    ) -> Optional[FogResult]:
        use_cache = opts.use_cache and FOG_CACHE_ENABLED and not evicted
        signature: Optional[CacheSignature] = None
        if use_cache:
            digest = _NOTHING_REVEALED if nothing_revealed else self._areas_digest or ""
            signature = self.cache.signature(viewport.bounds, digest, mode, opts.zoom_level)
            cached = self.cache.get(signature)
            if cached is not None:
                LOGGER.debug("Fog cache hit for %s", signature.bounds)
                hit = copy.deepcopy(cached)
                hit.metrics = replace(hit.metrics, cache_hit=True)
                return hit

        try:
            outcome = self.breaker.execute(
                lambda: self._compute_viewport_fog(viewport, opts, mode, nothing_revealed)
            )
        except CircuitOpenError as exc:
            warnings.append(str(exc))
            return None
        except Exception as exc:
            errors.append(f"Primary fog calculation failed: {exc}")
            if not self.notices.notice(
                ("primary-failure", type(exc).__name__),
                logging.WARNING,
                "Viewport fog calculation failed, trying fallback: %s",
                exc,
            ):
                LOGGER.debug("Viewport fog calculation failed again: %s", exc)
            return None

        warnings.extend(outcome.warnings)
        result = self._result(
            outcome.fog,
            "primary",
            "viewport",
            start,
            errors,
            warnings,
            fallback_used=evicted > 0,
            input_vertices=outcome.input_vertices,
            areas_considered=outcome.areas_considered,
        )
        if signature is not None:
            self.cache.put(signature, copy.deepcopy(result))
        return result

    def _compute_viewport_fog(
        self,
        viewport: Viewport,
        opts: FogCalculationOptions,
        mode: PerformanceMode,
        nothing_revealed: bool,
    ) -> _PrimaryOutcome:
        """Guarded body of the primary tier; raises FogEngineError on failure."""

        viewport_feature = viewport.to_feature()
        if nothing_revealed:
            return _PrimaryOutcome([viewport_feature], [], 0, 0)
        query = self.index.query_viewport(viewport.bounds, opts.zoom_level)
        if not query.features:
            return _PrimaryOutcome([viewport_feature], [], 0, 0)

        fog, warnings, input_vertices = self.geometry_breaker.execute(
            lambda: self._carve(viewport_feature, query.features, mode)
        )
        if query.truncated:
            warnings.insert(0, "Revealed areas truncated to the spatial query limit")
        return _PrimaryOutcome(fog, warnings, input_vertices, len(query.features))

    @staticmethod
    def _carve(
        viewport_feature: PolygonFeature,
        areas: Sequence[PolygonFeature],
        mode: PerformanceMode,
    ) -> Tuple[List[PolygonFeature], List[str], int]:
        """Union ``areas`` and cut them out of the viewport."""

        warnings: List[str] = []
        union = union_polygons(areas)
        if union.result is None:
            raise GeometryOperationError(
                "Union of revealed areas failed: " + "; ".join(union.errors),
                "union",
                fallback_used=union.metrics.fallback_used,
            )
        warnings.extend(union.errors)
        warnings.extend(union.warnings)
        revealed = union.result

        if mode == "fast":
            simplified = simplify_feature(
                revealed, FAST_MODE_TOLERANCE_DEG, FAST_MODE_MAX_VERTICES
            )
            if simplified.result is not None:
                revealed = simplified.result
            else:
                warnings.append("Fast-mode simplification failed; using full detail")

        cut = difference(viewport_feature, revealed)
        if cut.errors:
            raise GeometryOperationError(
                "Difference with viewport failed: " + "; ".join(cut.errors),
                "difference",
                geometry_type=revealed.kind,
            )
        warnings.extend(cut.warnings)
        fog = [cut.result] if cut.result is not None else []
        if not fog:
            LOGGER.debug("Viewport fully revealed; no fog to render")
        return fog, warnings, union.metrics.input_complexity.total_vertices

    @staticmethod
    def _result(
        fog: Sequence[PolygonFeature],
        tier: Tier,
        operation_type: OperationType,
        start: float,
        errors: List[str],
        warnings: List[str],
        *,
        fallback_used: bool,
        had_errors: Optional[bool] = None,
        input_vertices: int = 0,
        areas_considered: int = 0,
    ) -> FogResult:
        complexity = combined_complexity(list(fog))
        execution_ms = elapsed_ms(start)
        metrics = FogMetrics(
            geometry_complexity=complexity,
            operation_type=operation_type,
            tier=tier,
            had_errors=bool(errors) if had_errors is None else had_errors,
            fallback_used=fallback_used,
            execution_time_ms=execution_ms,
            performance_level=performance_level(execution_ms),
            input_vertices=input_vertices,
            output_vertices=complexity.total_vertices,
            areas_considered=areas_considered,
        )
        if tier != "primary":
            LOGGER.debug("Fog resolved by %s tier (%s)", tier, operation_type)
        return FogResult(
            fog_geojson=_feature_collection(fog),
            calculation_time_ms=execution_ms,
            metrics=metrics,
            errors=list(errors),
            warnings=list(warnings),
        )


def create_fog_features(
    revealed_areas: Any,
    options: FogCalculationOptions,
    is_viewport_changing: bool = False,
    calculator: Optional[FogCalculator] = None,
) -> List[Dict[str, Any]]:
    """Return only the fog features.

    While the viewport is moving the plain viewport rectangle is returned so
    the overlay stays stable until the map settles.
    """

    if is_viewport_changing:
        if options.viewport_bounds is not None:
            try:
                return [create_viewport_fog_polygon(options.viewport_bounds)]
            except ConfigurationError:
                return [create_world_fog_polygon()]
        return [create_world_fog_polygon()]

    result = (calculator or get_default_calculator()).calculate(revealed_areas, options)
    if result.errors:
        LOGGER.warning("Fog calculation completed with errors: %s", result.errors)
    return result.features


_DEFAULT_CALCULATOR: Optional[FogCalculator] = None
_DEFAULT_LOCK = Lock()


def get_default_calculator() -> FogCalculator:
    global _DEFAULT_CALCULATOR
    with _DEFAULT_LOCK:
        if _DEFAULT_CALCULATOR is None:
            _DEFAULT_CALCULATOR = FogCalculator()
        return _DEFAULT_CALCULATOR


def reset_default_calculator() -> None:
    """Drop the shared calculator so the next call starts fresh."""

    global _DEFAULT_CALCULATOR
    with _DEFAULT_LOCK:
        _DEFAULT_CALCULATOR = None


def calculate(
    revealed_areas: Any = None, options: Optional[FogCalculationOptions] = None
) -> FogResult:
    """Calculate fog with the shared default calculator."""

    return get_default_calculator().calculate(revealed_areas, options)


__all__ = [
    "FogCalculationOptions",
    "FogCalculator",
    "FogMetrics",
    "FogResult",
    "calculate",
    "create_fog_features",
    "create_viewport_fog_polygon",
    "create_world_fog_polygon",
    "get_default_calculator",
    "get_default_options",
    "performance_level",
    "reset_default_calculator",
]
