"""Central configuration for the fog geometry engine.

All values are constants imported by the rest of the package. Adjust as needed
for your environment. Every tunable can be overridden through environment
variables (optionally via a local `.env`).
"""

from __future__ import annotations

import importlib
import os


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env variables when python-dotenv is available.
_load_dotenv = None
try:
    _dotenv_mod = importlib.import_module("dotenv")
    _load_dotenv = getattr(_dotenv_mod, "load_dotenv", None)
except Exception:
    _load_dotenv = None

if callable(_load_dotenv):
    # Load .env from the current directory or any parent folder.
    _load_dotenv()


# ---------------------------------------------------------------------------
# Coordinate ranges
# ---------------------------------------------------------------------------
MIN_LONGITUDE = -180.0
MAX_LONGITUDE = 180.0
MIN_LATITUDE = -90.0
MAX_LATITUDE = 90.0


# ---------------------------------------------------------------------------
# Validation / sanitization
# ---------------------------------------------------------------------------
# Consecutive points closer than this (degrees, per axis) are collapsed.
SANITIZE_TOLERANCE_DEG = _env_float("FOG_SANITIZE_TOLERANCE_DEG", 0.000001)

# Decimal places kept when rounding coordinates (~0.1 m at the equator).
SANITIZE_PRECISION = _env_int("FOG_SANITIZE_PRECISION", 6)

# Vertex count thresholds for the complexity tiers.
COMPLEXITY_MEDIUM_VERTICES = _env_int("FOG_COMPLEXITY_MEDIUM_VERTICES", 500)
COMPLEXITY_HIGH_VERTICES = _env_int("FOG_COMPLEXITY_HIGH_VERTICES", 1000)

# Rings with more vertices than this produce a rendering warning.
RING_VERTEX_WARNING = _env_int("FOG_RING_VERTEX_WARNING", 1000)


# ---------------------------------------------------------------------------
# Geometry operations
# ---------------------------------------------------------------------------
# Segments per quarter circle when buffering a GPS point.
BUFFER_QUAD_SEGMENTS = _env_int("FOG_BUFFER_QUAD_SEGMENTS", 16)

# Maximum tolerance increases attempted when simplifying under a vertex budget.
SIMPLIFY_MAX_ATTEMPTS = _env_int("FOG_SIMPLIFY_MAX_ATTEMPTS", 5)

# Simplification tolerance (degrees) applied to revealed areas in "fast" mode.
FAST_MODE_TOLERANCE_DEG = _env_float("FOG_FAST_MODE_TOLERANCE_DEG", 0.0001)

# Vertex budget for the unioned revealed area in "fast" mode.
FAST_MODE_MAX_VERTICES = _env_int("FOG_FAST_MODE_MAX_VERTICES", 2000)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------
# Failures within the window that open the fog calculation circuit.
CIRCUIT_FAILURE_THRESHOLD = _env_int("FOG_CIRCUIT_FAILURE_THRESHOLD", 3)
# Seconds to stay OPEN before allowing a single trial call.
CIRCUIT_RECOVERY_TIMEOUT_S = _env_float("FOG_CIRCUIT_RECOVERY_TIMEOUT_S", 10.0)
# Sliding window (seconds) over which failures are counted.
CIRCUIT_FAILURE_WINDOW_S = _env_float("FOG_CIRCUIT_FAILURE_WINDOW_S", 30.0)

# Preset for guarding individual geometry operations.
GEOMETRY_CIRCUIT_FAILURE_THRESHOLD = _env_int("FOG_GEOMETRY_CIRCUIT_FAILURE_THRESHOLD", 5)
GEOMETRY_CIRCUIT_RECOVERY_TIMEOUT_S = _env_float("FOG_GEOMETRY_CIRCUIT_RECOVERY_TIMEOUT_S", 5.0)
GEOMETRY_CIRCUIT_FAILURE_WINDOW_S = _env_float("FOG_GEOMETRY_CIRCUIT_FAILURE_WINDOW_S", 15.0)


# ---------------------------------------------------------------------------
# Fog cache
# ---------------------------------------------------------------------------
FOG_CACHE_MAX_ENTRIES = _env_int("FOG_CACHE_MAX_ENTRIES", 100)

# Entry lifetime in seconds. Set to 0 to keep entries until evicted.
FOG_CACHE_TTL_S = _env_float("FOG_CACHE_TTL_S", 300.0)

# Grid size (degrees) used to quantize viewport bounds into cache keys.
FOG_CACHE_VIEWPORT_TOLERANCE_DEG = _env_float(
    "FOG_CACHE_VIEWPORT_TOLERANCE_DEG", 0.001
)

FOG_CACHE_ENABLED = _env_bool("FOG_CACHE_ENABLED", True)


# ---------------------------------------------------------------------------
# Spatial index
# ---------------------------------------------------------------------------
# Maximum features returned from a single viewport query.
SPATIAL_MAX_RESULTS = _env_int("FOG_SPATIAL_MAX_RESULTS", 1000)

# Degrees added around the viewport for the broad-phase query.
SPATIAL_QUERY_BUFFER_DEG = _env_float("FOG_SPATIAL_QUERY_BUFFER_DEG", 0.001)

# Zoom assumed when the caller does not supply one.
SPATIAL_DEFAULT_ZOOM = _env_float("FOG_SPATIAL_DEFAULT_ZOOM", 10.0)

# Level-of-detail settings.
LOD_ENABLED = _env_bool("FOG_LOD_ENABLED", True)
LOD_FULL_DETAIL_ZOOM = _env_float("FOG_LOD_FULL_DETAIL_ZOOM", 12.0)
LOD_FULL_DETAIL_DISTANCE_DEG = _env_float("FOG_LOD_FULL_DETAIL_DISTANCE_DEG", 0.01)
LOD_TILE_SIZE_PX = 256
LOD_MIN_FEATURE_PIXELS = _env_float("FOG_LOD_MIN_FEATURE_PIXELS", 1.0)
LOD_SIMPLIFY_PIXELS = _env_float("FOG_LOD_SIMPLIFY_PIXELS", 0.5)
LOD_VERTEX_BUDGET = _env_int("FOG_LOD_VERTEX_BUDGET", 20000)

# Total indexed vertices above which cold entries are simplified or evicted.
SPATIAL_MAX_INDEXED_VERTICES = _env_int("FOG_SPATIAL_MAX_INDEXED_VERTICES", 500000)

# Tolerance (degrees) used when compacting cold entries.
SPATIAL_COMPACT_TOLERANCE_DEG = _env_float(
    "FOG_SPATIAL_COMPACT_TOLERANCE_DEG", 0.0005
)


# ---------------------------------------------------------------------------
# Fog calculation
# ---------------------------------------------------------------------------
# Execution time thresholds (milliseconds) for the performance level label.
PERFORMANCE_MODERATE_MS = 50.0
PERFORMANCE_SLOW_MS = 100.0
