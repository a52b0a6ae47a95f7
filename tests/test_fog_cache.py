"""Tests for the versioned fog result cache."""

from __future__ import annotations

import pytest

from cartographer_fog.errors import ConfigurationError
from cartographer_fog.fog_cache import FogCache
from cartographer_fog.fog_calculation import FogCalculator, FogCalculationOptions


def _result(bounds=(-1.0, -1.0, 1.0, 1.0)):
    options = FogCalculationOptions(viewport_bounds=bounds, use_cache=False)
    return FogCalculator().calculate(None, options)


def test_put_then_get_returns_stored_result():
    cache = FogCache()
    signature = cache.signature([-1, -1, 1, 1])
    stored = _result()

    cache.put(signature, stored)

    assert cache.get(signature) is stored
    stats = cache.stats()
    assert stats.hits == 1
    assert stats.entries == 1


def test_nearby_viewports_share_a_signature():
    cache = FogCache(viewport_tolerance=0.001)

    first = cache.signature([-1.0, -1.0, 1.0, 1.0])
    second = cache.signature([-1.0002, -0.9999, 1.0003, 1.0001])

    assert first == second
    assert cache.signature([-1.01, -1.0, 1.0, 1.0]) != first


def test_signature_distinguishes_mode_digest_and_zoom():
    cache = FogCache()

    base = cache.signature([-1, -1, 1, 1])

    assert cache.signature([-1, -1, 1, 1], mode="fast") != base
    assert cache.signature([-1, -1, 1, 1], areas_digest="abc") != base
    assert cache.signature([-1, -1, 1, 1], zoom=10.2) == cache.signature(
        [-1, -1, 1, 1], zoom=10.9
    )
    assert cache.signature([-1, -1, 1, 1], zoom=10) != cache.signature(
        [-1, -1, 1, 1], zoom=11
    )


def test_invalid_bounds_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        FogCache().signature([1, 1, 0, 0])


def test_version_bump_makes_old_signatures_miss():
    cache = FogCache()
    signature = cache.signature([-1, -1, 1, 1])
    cache.put(signature, _result())

    affected = cache.invalidate()

    assert affected == 1
    assert cache.version == 1
    assert cache.get(signature) is None
    assert cache.get(cache.signature([-1, -1, 1, 1])) is None


def test_put_with_stale_signature_is_ignored():
    cache = FogCache()
    stale = cache.signature([-1, -1, 1, 1])
    cache.invalidate()

    cache.put(stale, _result())

    assert cache.stats().entries == 0


def test_lru_eviction_at_capacity():
    cache = FogCache(max_entries=2)
    sigs = [cache.signature([i, 0, i + 1, 1]) for i in range(3)]
    cache.put(sigs[0], _result())
    cache.put(sigs[1], _result())
    assert cache.get(sigs[0]) is not None

    cache.put(sigs[2], _result())

    assert cache.get(sigs[1]) is None
    assert cache.get(sigs[0]) is not None
    assert cache.stats().evicted_entries == 1


def test_entries_expire_after_ttl(clock):
    cache = FogCache(ttl_seconds=300, clock=clock)
    signature = cache.signature([-1, -1, 1, 1])
    cache.put(signature, _result())

    clock.advance(301)

    assert cache.get(signature) is None
    assert cache.stats().expired_entries == 1


def test_expirations_are_counted_when_a_write_triggers_them(clock):
    cache = FogCache(ttl_seconds=60, clock=clock)
    old = cache.signature([0, 0, 1, 1])
    cache.put(old, _result())
    clock.advance(61)

    cache.put(cache.signature([5, 5, 6, 6]), _result())
    stats = cache.stats()

    assert stats.entries == 1
    assert stats.expired_entries == 1
    assert cache.stats().expired_entries == 1


def test_zero_ttl_keeps_entries(clock):
    cache = FogCache(ttl_seconds=0, clock=clock)
    signature = cache.signature([-1, -1, 1, 1])
    cache.put(signature, _result())

    clock.advance(10_000)

    assert cache.get(signature) is not None


def test_zero_capacity_disables_caching():
    cache = FogCache(max_entries=0)
    signature = cache.signature([-1, -1, 1, 1])

    cache.put(signature, _result())

    assert cache.get(signature) is None


def test_invalidate_viewport_removes_overlapping_entries():
    cache = FogCache()
    near = cache.signature([0, 0, 1, 1])
    far = cache.signature([50, 50, 51, 51])
    cache.put(near, _result())
    cache.put(far, _result())

    removed = cache.invalidate_viewport([0.5, 0.5, 2, 2])

    assert removed == 1
    assert cache.get(near) is None
    assert cache.get(far) is not None


def test_invalidate_with_predicate():
    cache = FogCache()
    fast = cache.signature([0, 0, 1, 1], mode="fast")
    accurate = cache.signature([0, 0, 1, 1])
    cache.put(fast, _result())
    cache.put(accurate, _result())

    assert cache.invalidate(lambda sig: sig.mode == "fast") == 1
    assert cache.get(accurate) is not None


def test_stats_hit_ratio_and_clear():
    cache = FogCache()
    signature = cache.signature([-1, -1, 1, 1])
    cache.get(signature)
    cache.put(signature, _result())
    cache.get(signature)

    stats = cache.stats()
    assert stats.hit_ratio == pytest.approx(0.5)
    assert stats.average_time_saved_ms > 0

    cache.clear()
    cleared = cache.stats()
    assert cleared.entries == 0
    assert cleared.hits == 0
