# tests/unit/test_lookups.py
import math

import pytest

from field_intake.lookups import (
    CachedEntityLookup,
    CatalogEntityLookup,
    InMemoryTTLCache,
    NearestServiceCenterLookup,
    haversine_km,
)
from field_intake.ports import AuxiliaryLookup, CachePort, EntityLookup


class CountingLookup:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def find_by_code(self, code):
        self.calls += 1
        return self.inner.find_by_code(code)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_catalog_lookup(catalog):
    assert isinstance(catalog, EntityLookup)
    found = catalog.find_by_code(" 4567890 ")
    assert found["id"] == "EQ-1"
    assert catalog.find_by_code("0000000") is None
    # callers get a copy
    found["id"] = "mutated"
    assert catalog.find_by_code("4567890")["id"] == "EQ-1"


def test_catalog_from_json(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text('{"entities": [{"code": "55555", "description": "Ice maker"}]}', encoding="utf-8")
    lookup = CatalogEntityLookup.from_json(path)
    assert lookup.find_by_code("55555") == {"id": "55555", "code": "55555", "description": "Ice maker"}


def test_cached_lookup_caches_hits_and_misses(catalog):
    counting = CountingLookup(catalog)
    cache = InMemoryTTLCache()
    assert isinstance(cache, CachePort)
    cached = CachedEntityLookup(counting, cache, ttl_seconds=60)

    assert cached.find_by_code("4567890")["id"] == "EQ-1"
    assert cached.find_by_code("4567890")["id"] == "EQ-1"
    assert cached.find_by_code("9999999") is None
    assert cached.find_by_code("9999999") is None
    assert counting.calls == 2


def test_ttl_cache_expiry():
    clock = FakeClock()
    cache = InMemoryTTLCache(clock=clock)
    cache.set("a", 1, ttl_seconds=10)
    cache.set("b", 2)
    clock.now += 5
    assert cache.get("a") == 1
    clock.now += 5
    assert cache.get("a") is None
    assert cache.get("b") == 2


def test_haversine():
    assert haversine_km(19.4, -99.1, 19.4, -99.1) == pytest.approx(0.0)
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)


def test_nearest_service_center(centers):
    assert isinstance(centers, AuxiliaryLookup)
    out = centers.compute({"latitude": 19.48, "longitude": -99.13})
    assert out["service_center"] == "North Depot"
    assert out["service_center_id"] == "SC-N"
    dist = haversine_km(19.48, -99.13, 19.50, -99.13)
    assert out["distance_km"] == round(dist, 2)
    assert out["eta_minutes"] == math.ceil(dist / 40.0 * 60)


def test_nearest_service_center_without_coordinates(centers):
    assert centers.compute({"latitude": 19.48}) is None
    assert NearestServiceCenterLookup([]).compute({"latitude": 1.0, "longitude": 1.0}) is None


def test_nearest_service_center_rejects_bad_speed():
    with pytest.raises(ValueError):
        NearestServiceCenterLookup([], average_speed_kmh=0)
