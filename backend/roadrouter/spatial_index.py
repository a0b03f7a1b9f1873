from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from .errors import NodeSnapFailedError
from .geo import Bounds, haversine_m
from .logging_utils import log_event
from .road_graph import RoadNode
from .settings import settings


@dataclass(frozen=True)
class NearestNode:
    node: RoadNode
    distance_m: float


class GridSpatialIndex:
    """Uniform ``grid_size`` x ``grid_size`` grid over a bounding region.

    Every node lands in exactly one cell (clamped to the grid edge). Queries
    scan the 3x3 block around the query cell and fall back to every node when
    that block is empty or the region has zero extent.
    """

    def __init__(
        self,
        nodes: Iterable[RoadNode],
        bounds: Bounds,
        *,
        grid_size: int | None = None,
    ) -> None:
        self._grid_size = max(1, int(grid_size if grid_size is not None else settings.spatial_grid_size))
        self._nodes: list[RoadNode] = list(nodes)
        self._bounds = bounds
        self._cells: dict[tuple[int, int], list[RoadNode]] = {}
        self._lat_cell = bounds.lat_span / self._grid_size
        self._lon_cell = bounds.lon_span / self._grid_size
        self._degenerate = self._lat_cell <= 0.0 or self._lon_cell <= 0.0

        self.query_count = 0
        self.fallback_queries = 0

        if self._degenerate or not self._nodes:
            return
        for node in self._nodes:
            self._cells.setdefault(self._cell_of(node.lat, node.lon), []).append(node)

    @property
    def degenerate(self) -> bool:
        return self._degenerate

    @property
    def grid_size(self) -> int:
        return self._grid_size

    def __len__(self) -> int:
        return len(self._nodes)

    def _clamp(self, value: int) -> int:
        return min(self._grid_size - 1, max(0, value))

    def _cell_of(self, lat: float, lon: float) -> tuple[int, int]:
        row = self._clamp(int(math.floor((lat - self._bounds.south) / self._lat_cell)))
        col = self._clamp(int(math.floor((lon - self._bounds.west) / self._lon_cell)))
        return (row, col)

    def cell_of(self, lat: float, lon: float) -> tuple[int, int] | None:
        if self._degenerate:
            return None
        return self._cell_of(lat, lon)

    def nearby_nodes(self, lat: float, lon: float) -> list[RoadNode]:
        self.query_count += 1
        if not self._nodes:
            return []
        if self._degenerate:
            return self._nodes
        row, col = self._cell_of(lat, lon)
        candidates: list[RoadNode] = []
        for d_row in (-1, 0, 1):
            for d_col in (-1, 0, 1):
                candidates.extend(self._cells.get((row + d_row, col + d_col), ()))
        if candidates:
            return candidates
        self.fallback_queries += 1
        return self._nodes

    def nearest_node(
        self,
        lat: float,
        lon: float,
        *,
        max_distance_m: float | None = None,
    ) -> NearestNode | None:
        limit_m = float(max_distance_m if max_distance_m is not None else settings.snap_max_distance_m)
        fallbacks_before = self.fallback_queries
        best: RoadNode | None = None
        best_distance = math.inf
        for node in self.nearby_nodes(lat, lon):
            dist = haversine_m(lat, lon, node.lat, node.lon)
            if dist < best_distance:
                best_distance = dist
                best = node
        if self.fallback_queries > fallbacks_before:
            log_event(
                "spatial_index_fallback",
                grid_size=self._grid_size,
                node_count=len(self._nodes),
                fallback_queries=self.fallback_queries,
                query_count=self.query_count,
            )
        if best is None:
            return None
        if best_distance > limit_m:
            log_event(
                "nearest_node_too_far",
                lat=lat,
                lon=lon,
                distance_m=round(best_distance, 1),
                max_distance_m=limit_m,
            )
            return None
        return NearestNode(node=best, distance_m=best_distance)

    def snap(self, lat: float, lon: float, *, max_distance_m: float | None = None) -> NearestNode:
        found = self.nearest_node(lat, lon, max_distance_m=max_distance_m)
        if found is None:
            raise NodeSnapFailedError(
                details={"lat": lat, "lon": lon, "node_count": len(self._nodes)},
            )
        return found
