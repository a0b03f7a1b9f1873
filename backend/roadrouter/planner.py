from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .astar import CostMode, SearchResult, TraceBatch, graph_speed_bound_mps
from .errors import PathNotFoundError
from .geo import Bounds, haversine_m, square_bounds
from .logging_utils import log_event, timed_event
from .road_graph import NodeId, RoadGraph, build_road_graph
from .route_cache import CacheManager
from .search_worker import run_search
from .settings import settings
from .spatial_index import GridSpatialIndex, NearestNode

LatLon = tuple[float, float]
Element = Mapping[str, Any]


class Geocoder(Protocol):
    def geocode(self, address: str) -> LatLon: ...


class MapDataSource(Protocol):
    def fetch(self, bounds: Bounds, start: LatLon, end: LatLon) -> Sequence[Element]: ...


class SearchRunner(Protocol):
    def __call__(
        self,
        graph: RoadGraph,
        start_id: NodeId,
        goal_id: NodeId,
        *,
        mode: CostMode,
        max_speed_mps: float,
    ) -> SearchResult: ...


@dataclass(frozen=True)
class RoutePlan:
    mode: str
    start: LatLon
    end: LatLon
    start_node: NodeId
    end_node: NodeId
    start_snap_m: float
    end_snap_m: float
    path: list[dict[str, Any]]
    total_time_s: float
    total_distance_m: float
    nodes_explored: int
    trace: list[TraceBatch]
    bounds: Bounds
    padding: float
    attempts: int
    graph_nodes: int
    map_cache: str | None = None
    timings_ms: dict[str, float] = field(default_factory=dict)

    @property
    def primary_metric(self) -> tuple[str, str]:
        if self.mode == "time":
            return ("Travel Time", format_duration(self.total_time_s))
        return ("Distance", format_distance(self.total_distance_m))

    @property
    def secondary_metric(self) -> tuple[str, str]:
        if self.mode == "time":
            return ("Distance", format_distance(self.total_distance_m))
        return ("Travel Time", format_duration(self.total_time_s))

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "start": list(self.start),
            "end": list(self.end),
            "start_node": self.start_node,
            "end_node": self.end_node,
            "total_time_s": round(self.total_time_s, 2),
            "total_distance_m": round(self.total_distance_m, 2),
            "travel_time": format_duration(self.total_time_s),
            "distance": format_distance(self.total_distance_m),
            "nodes_explored": self.nodes_explored,
            "path_points": len(self.path),
            "graph_nodes": self.graph_nodes,
            "padding": self.padding,
            "attempts": self.attempts,
            "map_cache": self.map_cache,
        }


def format_duration(seconds: float) -> str:
    if seconds < 3600:
        return f"{seconds / 60.0:.1f} min"
    return f"{seconds / 3600.0:.1f} hours"


def format_distance(metres: float) -> str:
    return f"{metres / 1000.0:.2f} km"


def count_trace_segments(trace: Sequence[TraceBatch]) -> int:
    return sum(len(batch) for batch in trace)


def flatten_trace(trace: Sequence[TraceBatch]) -> list[tuple[LatLon, LatLon]]:
    """Trace batches as ordered ``((lat, lon), (lat, lon))`` segments for replay."""
    segments: list[tuple[LatLon, LatLon]] = []
    for batch in trace:
        for seg in batch:
            segments.append(
                (
                    (float(seg["from"]["lat"]), float(seg["from"]["lon"])),
                    (float(seg["to"]["lat"]), float(seg["to"]["lon"])),
                )
            )
    return segments


def attempt_paddings(start: LatLon, end: LatLon) -> tuple[float, float]:
    direct_km = haversine_m(start[0], start[1], end[0], end[1]) / 1000.0
    if direct_km > settings.planner_long_route_km:
        return (settings.planner_padding_long, settings.planner_retry_padding_long)
    return (settings.planner_padding_short, settings.planner_retry_padding_short)


def route_over_elements(
    elements: Sequence[Element],
    start: LatLon,
    end: LatLon,
    *,
    mode: CostMode = "time",
    bounds: Bounds | None = None,
    search: SearchRunner = run_search,
) -> tuple[RoadGraph, NearestNode, NearestNode, SearchResult, Bounds]:
    """Build, index, snap and search one element collection.

    Raises ``EmptyGraphError``, ``NodeSnapFailedError``, ``PathNotFoundError``
    or ``SearchFailedError``.
    """
    graph = build_road_graph(elements).require_non_empty()
    index_bounds = bounds or graph.require_bounds()
    index = GridSpatialIndex(graph.nodes.values(), index_bounds)
    start_snap = index.snap(*start)
    end_snap = index.snap(*end)
    log_event(
        "endpoints_snapped",
        start_node=start_snap.node.id,
        start_snap_m=round(start_snap.distance_m, 1),
        end_node=end_snap.node.id,
        end_snap_m=round(end_snap.distance_m, 1),
        graph_nodes=len(graph),
    )
    result = search(
        graph,
        start_snap.node.id,
        end_snap.node.id,
        mode=mode,
        max_speed_mps=graph_speed_bound_mps(graph),
    )
    return graph, start_snap, end_snap, result, index_bounds


class RoutePlanner:
    """Geocode, fetch map data (through the cache), and search, with one retry.

    The first attempt pads the start/end square by 0.2 (0.1 beyond 75 km); a
    ``PathNotFoundError`` (snap failures included) retries once with 0.5 (0.4).
    Empty graphs and search infrastructure failures are not retried.
    """

    def __init__(
        self,
        *,
        cache: CacheManager,
        map_source: MapDataSource,
        geocoder: Geocoder | None = None,
        search: SearchRunner = run_search,
    ) -> None:
        self.cache = cache
        self.map_source = map_source
        self.geocoder = geocoder
        self._search = search

    def resolve_address(self, address: str) -> LatLon:
        cached = self.cache.get_cached_geocode(address)
        if cached is not None:
            log_event("geocode_cache_hit", address=self.cache.geocoding_key(address))
            return (float(cached[0]), float(cached[1]))
        if self.geocoder is None:
            raise ValueError("no geocoder configured and address is not cached")
        lat, lon = self.geocoder.geocode(address)
        coords = (float(lat), float(lon))
        self.cache.set_cached_geocode(address, list(coords))
        log_event("geocode_cached", address=self.cache.geocoding_key(address))
        return coords

    def load_elements(
        self,
        bounds: Bounds,
        start: LatLon,
        end: LatLon,
        *,
        use_route_key: bool = True,
    ) -> tuple[list[Element], str | None]:
        # The route key ignores the box size, so a retry over a larger box skips it.
        if use_route_key:
            hit = self.cache.lookup_map_data(bounds, start, end)
        else:
            hit = self.cache.lookup_map_data(bounds)
        if hit is not None:
            return list(hit.data), hit.kind
        elements = list(self.map_source.fetch(bounds, start, end))
        self.cache.set_cached_map_data_by_route(start, end, bounds, elements)
        return elements, None

    def _attempt(self, start: LatLon, end: LatLon, *, mode: CostMode, padding: float, attempt: int) -> RoutePlan:
        timings: dict[str, float] = {}
        bounds = square_bounds(start, end).pad(padding)

        t0 = time.perf_counter()
        elements, cache_kind = self.load_elements(bounds, start, end, use_route_key=attempt == 1)
        timings["load_ms"] = round((time.perf_counter() - t0) * 1000.0, 2)

        t1 = time.perf_counter()
        graph, start_snap, end_snap, result, _ = route_over_elements(
            elements,
            start,
            end,
            mode=mode,
            bounds=bounds,
            search=self._search,
        )
        timings["route_ms"] = round((time.perf_counter() - t1) * 1000.0, 2)

        totals = graph.path_totals(result.node_ids)
        return RoutePlan(
            mode=mode,
            start=start,
            end=end,
            start_node=start_snap.node.id,
            end_node=end_snap.node.id,
            start_snap_m=start_snap.distance_m,
            end_snap_m=end_snap.distance_m,
            path=result.path,
            total_time_s=totals.time,
            total_distance_m=totals.distance,
            nodes_explored=count_trace_segments(result.trace),
            trace=result.trace,
            bounds=bounds,
            padding=padding,
            attempts=attempt,
            graph_nodes=len(graph),
            map_cache=cache_kind,
            timings_ms=timings,
        )

    def plan_between(self, start: LatLon, end: LatLon, *, mode: CostMode = "time") -> RoutePlan:
        first_padding, retry_padding = attempt_paddings(start, end)
        with timed_event("route_planned", mode=mode, start=list(start), end=list(end)) as record:
            try:
                plan = self._attempt(start, end, mode=mode, padding=first_padding, attempt=1)
            except PathNotFoundError as exc:
                log_event(
                    "route_attempt_retry",
                    reason_code=exc.reason_code,
                    error_message=exc.message,
                    padding=first_padding,
                    retry_padding=retry_padding,
                )
                plan = self._attempt(start, end, mode=mode, padding=retry_padding, attempt=2)
            record.update(plan.summary(), timings_ms=plan.timings_ms)
        return plan

    def plan(self, start_address: str, end_address: str, *, mode: CostMode = "time") -> RoutePlan:
        start = self.resolve_address(start_address)
        end = self.resolve_address(end_address)
        return self.plan_between(start, end, mode=mode)
