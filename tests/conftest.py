"""Global pytest fixtures & helpers.

Adds project root to path and provides reusable polygon feature factories so
geometry, index and calculator tests build inputs the same way.
"""
from __future__ import annotations

import os
import sys
from typing import Any, Dict, Iterator, List, Optional, Sequence

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from cartographer_fog.fog_calculation import reset_default_calculator


# --- Factory helpers -------------------------------------------------
def make_polygon(
    rings: Sequence[Sequence[Sequence[float]]],
    properties: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "type": "Feature",
        "properties": dict(properties or {}),
        "geometry": {
            "type": "Polygon",
            "coordinates": [[list(pt) for pt in ring] for ring in rings],
        },
    }


def make_square(
    min_lon: float,
    min_lat: float,
    size: float,
    properties: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    max_lon, max_lat = min_lon + size, min_lat + size
    ring = [
        [min_lon, min_lat],
        [min_lon, max_lat],
        [max_lon, max_lat],
        [max_lon, min_lat],
        [min_lon, min_lat],
    ]
    return make_polygon([ring], properties)


def make_multipolygon(*squares: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "Feature",
        "properties": {},
        "geometry": {
            "type": "MultiPolygon",
            "coordinates": [sq["geometry"]["coordinates"] for sq in squares],
        },
    }


def make_circle(
    lon: float, lat: float, radius: float, segments: int = 64
) -> Dict[str, Any]:
    from math import cos, pi, sin

    ring: List[List[float]] = [
        [lon + radius * cos(2 * pi * i / segments), lat + radius * sin(2 * pi * i / segments)]
        for i in range(segments)
    ]
    ring.append(list(ring[0]))
    return make_polygon([ring])


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def unit_square() -> Dict[str, Any]:
    return make_polygon([[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]])


@pytest.fixture
def small_square() -> Dict[str, Any]:
    return make_polygon([[[0, 0], [0, 0.5], [0.5, 0.5], [0.5, 0], [0, 0]]])


@pytest.fixture
def viewport_bounds() -> List[float]:
    return [-1.0, -1.0, 1.0, 1.0]


@pytest.fixture(autouse=True)
def fresh_default_calculator() -> Iterator[None]:
    reset_default_calculator()
    yield
    reset_default_calculator()


class FakeClock:
    """Manually advanced monotonic clock for time-based behaviour."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
