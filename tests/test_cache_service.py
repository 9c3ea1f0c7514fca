"""
Tests: read-model cache (in-memory backend, as used in testing).

Covers cache-aside, ttl=0 bypass, expiry and the prefix invalidation
hooks called by approval transitions and plan recalculation, and the
fail-open behaviour when the backend cannot be reached.
"""

from __future__ import annotations

import pytest

from grc.services import cache_service


class _Loader:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.value


@pytest.mark.unit
def test_get_cached_calls_loader_once():
    loader = _Loader({"n": 1})
    assert cache_service.get_cached("k", ttl=30, loader=loader) == {"n": 1}
    assert cache_service.get_cached("k", ttl=30, loader=loader) == {"n": 1}
    assert loader.calls == 1


@pytest.mark.unit
def test_zero_ttl_bypasses_cache():
    loader = _Loader([1, 2])
    cache_service.get_cached("k", ttl=0, loader=loader)
    cache_service.get_cached("k", ttl=0, loader=loader)
    assert loader.calls == 2
    assert cache_service.get_cached("k", ttl=30) is None


@pytest.mark.unit
def test_entries_expire(monkeypatch):
    clock = {"now": 1000.0}
    monkeypatch.setattr(cache_service.time, "time", lambda: clock["now"])
    cache_service.set_cached("k", "v", ttl=10)
    assert cache_service.get_cached("k") == "v"
    clock["now"] += 11
    assert cache_service.get_cached("k") is None


@pytest.mark.unit
def test_approval_invalidation_keeps_plan_listings():
    cache_service.set_cached(cache_service.dashboard_key(7), {"d": 1})
    cache_service.set_cached(cache_service.metrics_key(), {"m": 1})
    cache_service.set_cached(cache_service.plan_key(3), [1])

    cache_service.invalidate_approval_cache()

    assert cache_service.get_cached(cache_service.dashboard_key(7)) is None
    assert cache_service.get_cached(cache_service.metrics_key()) is None
    assert cache_service.get_cached(cache_service.plan_key(3)) == [1]


@pytest.mark.unit
def test_plan_invalidation_is_per_plan():
    cache_service.set_cached(cache_service.plan_key(1), [1])
    cache_service.set_cached(cache_service.plan_key(2), [2])
    cache_service.invalidate_plan_cache(1)
    assert cache_service.get_cached(cache_service.plan_key(1)) is None
    assert cache_service.get_cached(cache_service.plan_key(2)) == [2]


@pytest.mark.unit
def test_invalidate_prefix_returns_count():
    cache_service.set_cached("approval:a", 1)
    cache_service.set_cached("approval:b", 2)
    cache_service.set_cached("other", 3)
    assert cache_service.invalidate_prefix("approval:") == 2
    assert cache_service.get_cached("other") == 3


@pytest.mark.unit
def test_health_check_reports_memory_backend():
    assert cache_service.health_check() == {"status": "ok", "backend": "memory"}


# ── Backend outage ────────────────────────────────────────────────────────


@pytest.mark.unit
def test_read_falls_through_to_loader_when_backend_down(cache_down):
    loader = _Loader({"n": 2})
    assert cache_service.get_cached("k", ttl=30, loader=loader) == {"n": 2}
    assert cache_service.get_cached("k", ttl=30, loader=loader) == {"n": 2}
    assert loader.calls == 2
    assert cache_service.get_cached("k", ttl=30) is None


@pytest.mark.unit
def test_writes_and_invalidations_are_dropped_when_backend_down(cache_down):
    cache_service.set_cached("approval:a", 1)
    assert cache_service.invalidate_prefix("approval:") == 0
    cache_service.invalidate_approval_cache()
    cache_service.invalidate_plan_cache(4)


@pytest.mark.unit
def test_health_check_reports_backend_error(cache_down):
    result = cache_service.health_check()
    assert result["status"] == "error"
    assert result["backend"] == "redis"
    assert "Connection refused" in result["detail"]
