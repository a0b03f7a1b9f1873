from __future__ import annotations

import copy
import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Literal

from .geo import Bounds, is_route_key, route_pair_key
from .logging_utils import log_event
from .settings import settings

Clock = Callable[[], float]
HitKind = Literal["route", "containment", "overlap"]

GEOCODING_SNAPSHOT = "geocoding.json"
MAP_DATA_SNAPSHOT = "mapdata_meta.json"


@dataclass
class _CacheEntry:
    data: Any
    timestamp: float
    bounds: Bounds | None = None
    route_key: bool = False


@dataclass(frozen=True)
class MapDataHit:
    key: str
    kind: HitKind
    data: Any


class TimedCacheStore:
    """Keyed store with TTL expiry and oldest-timestamp eviction.

    Expired entries read as absent. After every write the store is trimmed
    back to ``max_entries`` by dropping the oldest timestamps first.
    """

    def __init__(self, name: str, *, ttl_s: float, max_entries: int, clock: Clock = time.time) -> None:
        self.name = name
        self._ttl_s = max(0.0, float(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._items: dict[str, _CacheEntry] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def _is_expired(self, entry: _CacheEntry, now: float) -> bool:
        return (now - entry.timestamp) > self._ttl_s

    def get(self, key: str) -> Any | None:
        entry = self.get_entry(key)
        return None if entry is None else copy.deepcopy(entry.data)

    def get_entry(self, key: str) -> _CacheEntry | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None or self._is_expired(entry, self._clock()):
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def set(
        self,
        key: str,
        data: Any,
        *,
        bounds: Bounds | None = None,
        route_key: bool = False,
        timestamp: float | None = None,
    ) -> None:
        entry = _CacheEntry(
            data=copy.deepcopy(data),
            timestamp=self._clock() if timestamp is None else float(timestamp),
            bounds=bounds,
            route_key=route_key,
        )
        with self._lock:
            self._items[key] = entry
            self._enforce_limit()

    def _enforce_limit(self) -> None:
        overflow = len(self._items) - self._max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._items.items(), key=lambda item: item[1].timestamp)[:overflow]
        for key, _entry in oldest:
            del self._items[key]
            self._evictions += 1

    def live_items(self) -> list[tuple[str, _CacheEntry]]:
        """Non-expired entries in insertion order."""
        with self._lock:
            now = self._clock()
            return [(k, e) for k, e in self._items.items() if not self._is_expired(e, now)]

    def items(self) -> list[tuple[str, _CacheEntry]]:
        with self._lock:
            return list(self._items.items())

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._items.items() if self._is_expired(e, now)]
            for key in stale:
                del self._items[key]
            self._expired += len(stale)
            return len(stale)

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expired": self._expired,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }


class CacheManager:
    """Geocoding and map-data caches with a JSON snapshot on disk.

    Construct one per process, call ``start_periodic_cleanup()`` to sweep
    expired entries in the background, and ``close()`` at shutdown.
    Persistence problems are logged and never reach callers.
    """

    def __init__(
        self,
        *,
        cache_dir: str | Path | None = None,
        clock: Clock = time.time,
        geocoding_ttl_s: float | None = None,
        geocoding_max_entries: int | None = None,
        map_data_ttl_s: float | None = None,
        map_data_max_entries: int | None = None,
        overlap_threshold: float | None = None,
        key_precision: int | None = None,
        load: bool = True,
    ) -> None:
        self._cache_dir = Path(cache_dir) if cache_dir is not None else settings.resolved_cache_dir()
        self._clock = clock
        self.geocoding = TimedCacheStore(
            "geocoding",
            ttl_s=geocoding_ttl_s if geocoding_ttl_s is not None else settings.geocoding_cache_ttl_s,
            max_entries=(
                geocoding_max_entries
                if geocoding_max_entries is not None
                else settings.geocoding_cache_max_entries
            ),
            clock=clock,
        )
        self.map_data = TimedCacheStore(
            "map_data",
            ttl_s=map_data_ttl_s if map_data_ttl_s is not None else settings.map_data_cache_ttl_s,
            max_entries=(
                map_data_max_entries
                if map_data_max_entries is not None
                else settings.map_data_cache_max_entries
            ),
            clock=clock,
        )
        self._overlap_threshold = float(
            overlap_threshold if overlap_threshold is not None else settings.cache_overlap_threshold
        )
        self._precision = int(key_precision if key_precision is not None else settings.cache_key_precision)
        self._persist_lock = Lock()
        self._cleanup_stop = threading.Event()
        self._cleanup_thread: threading.Thread | None = None
        if load:
            self.load_from_storage()
            self.cleanup()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    # keys

    @staticmethod
    def geocoding_key(address: str) -> str:
        return str(address).lower().strip()

    def map_data_key(self, bounds: Bounds) -> str:
        return bounds.cache_key(self._precision)

    def route_key(self, start: tuple[float, float], end: tuple[float, float]) -> str:
        return route_pair_key(start, end, self._precision)

    # geocoding

    def get_cached_geocode(self, address: str) -> Any | None:
        return self.geocoding.get(self.geocoding_key(address))

    def set_cached_geocode(self, address: str, coords: Any) -> None:
        self.geocoding.set(self.geocoding_key(address), coords)
        self.save_to_storage()

    # map data

    def get_cached_map_data_by_route(self, start: tuple[float, float], end: tuple[float, float]) -> Any | None:
        return self.map_data.get(self.route_key(start, end))

    def get_cached_map_data(self, bounds: Bounds) -> Any | None:
        hit = self._lookup_by_bounds(bounds)
        return None if hit is None else hit.data

    def _lookup_by_bounds(self, bounds: Bounds) -> MapDataHit | None:
        candidates: list[tuple[str, Bounds, Any]] = []
        for key, entry in self.map_data.live_items():
            if entry.route_key or is_route_key(key):
                continue
            try:
                cached_bounds = Bounds.from_key(key)
            except ValueError:
                continue
            candidates.append((key, cached_bounds, entry.data))
        for key, cached_bounds, data in candidates:
            if cached_bounds.contains(bounds):
                return MapDataHit(key=key, kind="containment", data=copy.deepcopy(data))
        for key, cached_bounds, data in candidates:
            if cached_bounds.overlap_ratio(bounds) >= self._overlap_threshold:
                return MapDataHit(key=key, kind="overlap", data=copy.deepcopy(data))
        return None

    def lookup_map_data(
        self,
        bounds: Bounds,
        start: tuple[float, float] | None = None,
        end: tuple[float, float] | None = None,
    ) -> MapDataHit | None:
        """Route key first, then a containing box, then a box overlapping by the threshold."""
        if start is not None and end is not None:
            key = self.route_key(start, end)
            entry = self.map_data.get_entry(key)
            if entry is not None:
                log_event("map_cache_hit", kind="route", key=key)
                return MapDataHit(key=key, kind="route", data=copy.deepcopy(entry.data))
        hit = self._lookup_by_bounds(bounds)
        if hit is None:
            log_event("map_cache_miss", bounds=bounds.to_dict())
            return None
        log_event("map_cache_hit", kind=hit.kind, key=hit.key)
        return hit

    def set_cached_map_data(self, bounds: Bounds, data: Any) -> str:
        key = self.map_data_key(bounds)
        self.map_data.set(key, data, bounds=bounds)
        self.save_to_storage()
        return key

    def set_cached_map_data_by_route(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
        bounds: Bounds,
        data: Any,
    ) -> str:
        key = self.route_key(start, end)
        self.map_data.set(key, data, bounds=bounds, route_key=True)
        self.save_to_storage()
        return key

    # maintenance

    def cleanup(self) -> dict[str, int]:
        removed = {
            "geocoding": self.geocoding.purge_expired(),
            "map_data": self.map_data.purge_expired(),
        }
        self.save_to_storage()
        log_event("cache_cleanup", removed=removed, stats=self.stats())
        return removed

    def stats(self) -> dict[str, int]:
        return {"geocoding": len(self.geocoding), "map_data": len(self.map_data)}

    def detailed_stats(self) -> dict[str, dict[str, Any]]:
        return {"geocoding": self.geocoding.snapshot(), "map_data": self.map_data.snapshot()}

    def clear_all(self) -> dict[str, int]:
        cleared = {"geocoding": self.geocoding.clear(), "map_data": self.map_data.clear()}
        with self._persist_lock:
            for name in (GEOCODING_SNAPSHOT, MAP_DATA_SNAPSHOT):
                try:
                    (self._cache_dir / name).unlink(missing_ok=True)
                except OSError as exc:
                    log_event("cache_clear_failed", file=name, error_message=str(exc))
        log_event("cache_cleared", cleared=cleared)
        return cleared

    # persistence

    def save_to_storage(self) -> bool:
        geocoding_rows = [
            [key, {"data": entry.data, "timestamp": entry.timestamp}]
            for key, entry in self.geocoding.items()
        ]
        # Map-data payloads are too large to persist; keep metadata only.
        map_rows = [
            [
                key,
                {
                    "timestamp": entry.timestamp,
                    "bounds": entry.bounds.to_dict() if entry.bounds is not None else None,
                    "route_key": entry.route_key,
                },
            ]
            for key, entry in self.map_data.items()
        ]
        with self._persist_lock:
            try:
                self._cache_dir.mkdir(parents=True, exist_ok=True)
                (self._cache_dir / GEOCODING_SNAPSHOT).write_text(json.dumps(geocoding_rows), encoding="utf-8")
                (self._cache_dir / MAP_DATA_SNAPSHOT).write_text(json.dumps(map_rows), encoding="utf-8")
            except (OSError, TypeError, ValueError) as exc:
                log_event(
                    "cache_persist_failed",
                    cache_dir=str(self._cache_dir),
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                return False
        return True

    def load_from_storage(self) -> int:
        path = self._cache_dir / GEOCODING_SNAPSHOT
        with self._persist_lock:
            try:
                if not path.exists():
                    return 0
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                log_event(
                    "cache_load_failed",
                    cache_dir=str(self._cache_dir),
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                return 0
        if not isinstance(raw, list):
            return 0
        loaded = 0
        for row in raw:
            if not isinstance(row, (list, tuple)) or len(row) != 2:
                continue
            key, entry = row
            if not isinstance(key, str) or not isinstance(entry, dict):
                continue
            timestamp = entry.get("timestamp")
            if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
                continue
            self.geocoding.set(key, entry.get("data"), timestamp=float(timestamp))
            loaded += 1
        return loaded

    # lifecycle

    def start_periodic_cleanup(self, interval_s: float | None = None) -> None:
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return
        interval = float(interval_s if interval_s is not None else settings.cache_cleanup_interval_s)
        self._cleanup_stop.clear()

        def _loop() -> None:
            while not self._cleanup_stop.wait(interval):
                self.cleanup()

        self._cleanup_thread = threading.Thread(target=_loop, name="cache-cleanup", daemon=True)
        self._cleanup_thread.start()

    def stop_periodic_cleanup(self) -> None:
        self._cleanup_stop.set()
        thread = self._cleanup_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._cleanup_thread = None

    def close(self) -> None:
        self.stop_periodic_cleanup()
        self.save_to_storage()
