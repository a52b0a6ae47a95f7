"""Tests for the STRtree-backed spatial index."""

from __future__ import annotations

import pytest

from cartographer_fog.errors import ConfigurationError
from cartographer_fog.spatial_index import (
    SpatialIndex,
    SpatialIndexOptions,
    pixel_degrees,
)

from conftest import make_circle, make_polygon, make_square


def test_insert_and_query_viewport():
    index = SpatialIndex()
    index.insert_many([make_square(0, 0, 0.5), make_square(10, 10, 1)])

    result = index.query_viewport([-1, -1, 1, 1], zoom=14)

    assert len(result.features) == 1
    assert result.features[0].bounds == (0.0, 0.0, 0.5, 0.5)
    assert result.candidates == 1


def test_query_includes_areas_just_outside_viewport_within_buffer():
    index = SpatialIndex(SpatialIndexOptions(query_buffer=0.01))
    index.insert(make_square(1.005, 0, 0.5))

    assert len(index.query_viewport([-1, -1, 1, 1], zoom=14).features) == 1


def test_insert_skips_invalid_areas(caplog):
    index = SpatialIndex()

    area_id = index.insert(make_polygon([[[0, 0], [0, 1]]]))

    assert area_id is None
    assert len(index) == 0
    assert "failed sanitization" in caplog.text


def test_area_id_uses_feature_id_property():
    index = SpatialIndex()

    area_id = index.insert(make_square(0, 0, 1, {"id": 42}))

    assert area_id == "42"
    assert "42" in index


def test_reinserting_same_area_replaces_entry():
    index = SpatialIndex()
    index.insert(make_square(0, 0, 1, {"id": "a"}))
    index.insert(make_square(0, 0, 2, {"id": "a"}))

    assert len(index) == 1
    assert index.memory_stats().total_vertices == 5


def test_remove_and_clear():
    index = SpatialIndex()
    first = index.insert(make_square(0, 0, 0.5))
    index.insert(make_square(0.6, 0.6, 0.2))

    assert index.remove(first)
    assert not index.remove(first)
    assert len(index.query_viewport([-1, -1, 1, 1], zoom=14).features) == 1

    index.clear()
    assert index.query_viewport([-1, -1, 1, 1], zoom=14).features == []


def test_rebuild_replaces_contents():
    index = SpatialIndex()
    index.insert(make_square(0, 0, 0.5))

    inserted = index.rebuild([make_square(5, 5, 1), make_square(6, 6, 1)])

    assert len(inserted) == 2
    assert index.query_viewport([-1, -1, 1, 1], zoom=14).features == []


@pytest.mark.parametrize("bounds", [[1, 1, 0, 0], [0, 0, 0, 0], [0, 0, 1, 100], None])
def test_query_viewport_rejects_invalid_bounds(bounds):
    with pytest.raises(ConfigurationError):
        SpatialIndex().query_viewport(bounds)


def test_lod_skips_tiny_far_areas_at_low_zoom():
    index = SpatialIndex()
    # About 100 m across, 20 degrees from the viewport centre.
    index.insert(make_square(20, 20, 0.001))
    index.insert(make_square(0, 0, 5))

    low = index.query_viewport([-30, -30, 30, 30], zoom=3)
    high = index.query_viewport([-30, -30, 30, 30], zoom=14)

    assert low.skipped_lod == 1
    assert len(low.features) == 1
    assert high.skipped_lod == 0
    assert len(high.features) == 2


def test_lod_simplifies_far_areas():
    index = SpatialIndex()
    index.insert(make_circle(10, 10, 2, segments=500))

    result = index.query_viewport([-20, -20, 20, 20], zoom=4)

    assert result.simplified == 1
    assert result.features[0].vertex_count < 501


def test_near_areas_keep_full_detail():
    index = SpatialIndex()
    index.insert(make_circle(0, 0, 0.001, segments=200))

    result = index.query_viewport([-0.01, -0.01, 0.01, 0.01], zoom=8)

    assert result.simplified == 0
    assert result.features[0].vertex_count == 201


def test_max_results_truncates():
    index = SpatialIndex()
    index.insert_many([make_square(i * 0.1, 0, 0.05) for i in range(5)])

    result = index.query_viewport([-1, -1, 1, 1], zoom=14, max_results=3)

    assert len(result.features) == 3
    assert result.truncated


def test_query_radius_filters_by_distance():
    index = SpatialIndex()
    index.insert(make_square(0.1, 0.1, 0.1, {"id": "near"}))
    index.insert(make_square(3, 3, 0.1, {"id": "far"}))

    found = index.query_radius((0, 0), 0.5)

    assert [feature.properties["id"] for feature in found] == ["near"]


@pytest.mark.parametrize("center, radius", [((0, 0), 0), ((0, 0), -1), ((500, 0), 1), ("x", 1)])
def test_query_radius_rejects_bad_arguments(center, radius):
    with pytest.raises(ConfigurationError):
        SpatialIndex().query_radius(center, radius)


def test_memory_budget_compacts_then_evicts_cold_entries():
    options = SpatialIndexOptions(max_vertices=600, compact_tolerance=0.01)
    index = SpatialIndex(options)
    cold = index.insert(make_circle(0, 0, 0.5, segments=400))
    index.insert(make_circle(5, 5, 0.5, segments=400))

    stats = index.memory_stats()

    assert stats.total_vertices <= 600
    assert stats.compacted_entries >= 1
    assert cold in index


def test_memory_budget_evicts_least_recently_queried():
    options = SpatialIndexOptions(max_vertices=12, compact_tolerance=0.0)
    index = SpatialIndex(options)
    first = index.insert(make_square(0, 0, 0.1))
    second = index.insert(make_square(5, 5, 0.1))
    index.query_viewport([-1, -1, 1, 1], zoom=14)

    index.insert(make_square(9, 9, 0.1))

    assert first in index
    assert second not in index
    assert index.memory_stats().evicted_entries == 1


def test_enforce_memory_budget_after_shrinking_limit():
    index = SpatialIndex()
    index.insert(make_square(0, 0, 0.1, {"id": "a"}))
    index.insert(make_square(1, 1, 0.1, {"id": "b"}))
    assert index.enforce_memory_budget() == 0

    index.options.max_vertices = 5
    touched = index.enforce_memory_budget()

    assert touched >= 1
    assert index.ids() == ["b"]
    assert len(index.features()) == 1


def test_pixel_degrees_halves_per_zoom_level():
    assert pixel_degrees(0) == pytest.approx(360 / 256)
    assert pixel_degrees(1) == pytest.approx(pixel_degrees(0) / 2)
