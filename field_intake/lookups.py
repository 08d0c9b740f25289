# field_intake/lookups.py
"""
Read-only lookup adapters.

- CatalogEntityLookup: equipment catalog held in memory (loaded from JSON by the CLI)
- CachedEntityLookup: wraps any EntityLookup with an injected CachePort
- InMemoryTTLCache: CachePort implementation (get / set with TTL)
- NearestServiceCenterLookup: AuxiliaryLookup that picks the closest service
  center to a coordinate and estimates travel time at an average speed
"""

from __future__ import annotations

import json
import math
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from field_intake.ports import CachePort, EntityLookup

_NOT_FOUND = {"__not_found__": True}


class CatalogEntityLookup:
    def __init__(self, entities: Iterable[Dict[str, Any]], *, code_key: str = "code"):
        self._by_code: Dict[str, Dict[str, Any]] = {}
        for e in entities:
            code = str(e.get(code_key) or "").strip()
            if code:
                self._by_code[code] = {"id": str(e.get("id") or code), **e}

    @classmethod
    def from_json(cls, path: str | Path) -> "CatalogEntityLookup":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("entities", [])
        if not isinstance(data, list):
            raise ValueError(f"Expected a list of entities in {path}")
        return cls(data)

    def find_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        found = self._by_code.get(str(code).strip())
        return dict(found) if found else None


class InMemoryTTLCache:
    def __init__(self, *, default_ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires = item
            if expires is not None and self._clock() >= expires:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires = (self._clock() + ttl) if ttl is not None else None
        with self._lock:
            self._data[key] = (value, expires)


class CachedEntityLookup:
    """Caches hits and misses alike; misses are stored with a sentinel."""

    def __init__(self, inner: EntityLookup, cache: CachePort, *, ttl_seconds: float = 300, namespace: str = "entity"):
        self._inner = inner
        self._cache = cache
        self._ttl = ttl_seconds
        self._ns = namespace

    def find_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        key = f"{self._ns}:{code}"
        cached = self._cache.get(key)
        if cached is not None:
            return None if cached == _NOT_FOUND else dict(cached)
        found = self._inner.find_by_code(code)
        self._cache.set(key, found if found else _NOT_FOUND, self._ttl)
        return found


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))


class NearestServiceCenterLookup:
    """payload: {"latitude": float, "longitude": float} -> {"service_center", "distance_km", "eta_minutes"}"""

    def __init__(self, centers: Iterable[Dict[str, Any]], *, average_speed_kmh: float = 40.0):
        self._centers: List[Dict[str, Any]] = [dict(c) for c in centers]
        if average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        self._speed = average_speed_kmh

    @classmethod
    def from_json(cls, path: str | Path, *, average_speed_kmh: float = 40.0) -> "NearestServiceCenterLookup":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("centers", [])
        return cls(data, average_speed_kmh=average_speed_kmh)

    def compute(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        lat = payload.get("latitude")
        lng = payload.get("longitude")
        if lat is None or lng is None or not self._centers:
            return None
        best = min(
            self._centers,
            key=lambda c: haversine_km(float(lat), float(lng), float(c["latitude"]), float(c["longitude"])),
        )
        dist = haversine_km(float(lat), float(lng), float(best["latitude"]), float(best["longitude"]))
        return {
            "service_center": best.get("name") or best.get("id"),
            "service_center_id": best.get("id"),
            "distance_km": round(dist, 2),
            "eta_minutes": int(math.ceil(dist / self._speed * 60)),
        }
