from __future__ import annotations

import math
import re
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal

from .errors import EmptyGraphError
from .geo import Bounds, haversine_m
from .logging_utils import log_event

NodeId = Hashable
Direction = Literal["forward", "reverse", "both"]

DEFAULT_SPEEDS_KMH: dict[str, float] = {
    "motorway": 110.0,
    "trunk": 90.0,
    "primary": 80.0,
    "secondary": 70.0,
    "tertiary": 50.0,
    "unclassified": 40.0,
    "residential": 30.0,
    "motorway_link": 60.0,
    "trunk_link": 50.0,
    "primary_link": 40.0,
    "secondary_link": 40.0,
    "tertiary_link": 30.0,
    "living_street": 10.0,
    "service": 10.0,
    "default": 40.0,
}
MAX_SPEED_KMH: float = max(DEFAULT_SPEEDS_KMH.values())
MAX_SPEED_MPS: float = MAX_SPEED_KMH * 1000.0 / 3600.0
MPH_TO_KMH = 1.60934

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_FIRST_NUMBER_RE = re.compile(r"\d+")


@dataclass(frozen=True)
class EdgeCost:
    time: float  # seconds
    distance: float  # metres

    def to_dict(self) -> dict[str, float]:
        return {"time": self.time, "distance": self.distance}


@dataclass
class RoadNode:
    id: NodeId
    lat: float
    lon: float
    adj: dict[NodeId, EdgeCost] = field(default_factory=dict)

    @property
    def coords(self) -> tuple[float, float]:
        return (self.lat, self.lon)


@dataclass(frozen=True)
class GraphBuildStats:
    nodes_kept: int
    ways_seen: int
    segments_seen: int
    segments_skipped: int
    edges_written: int


@dataclass(frozen=True)
class RoadGraph:
    """Directed road graph keyed by node id.

    Read-only after ``build_road_graph`` returns; searches keep their own state.
    """

    nodes: dict[NodeId, RoadNode]
    stats: GraphBuildStats | None = None

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def node(self, node_id: NodeId) -> RoadNode | None:
        return self.nodes.get(node_id)

    def edge(self, u: NodeId, v: NodeId) -> EdgeCost | None:
        node = self.nodes.get(u)
        if node is None:
            return None
        return node.adj.get(v)

    @property
    def edge_count(self) -> int:
        return sum(len(node.adj) for node in self.nodes.values())

    def bounds(self) -> Bounds | None:
        if not self.nodes:
            return None
        return Bounds.around([node.coords for node in self.nodes.values()])

    def require_non_empty(self) -> "RoadGraph":
        if not self.nodes:
            raise EmptyGraphError(details={"stats": _stats_dict(self.stats)})
        return self

    def require_bounds(self) -> Bounds:
        bounds = self.bounds()
        if bounds is None:
            raise EmptyGraphError(details={"stats": _stats_dict(self.stats)})
        return bounds

    def path_totals(self, node_ids: Sequence[NodeId]) -> EdgeCost:
        total_time = 0.0
        total_distance = 0.0
        for u, v in zip(node_ids, node_ids[1:]):
            cost = self.edge(u, v)
            if cost is None:
                continue
            total_time += cost.time
            total_distance += cost.distance
        return EdgeCost(time=total_time, distance=total_distance)


def _stats_dict(stats: GraphBuildStats | None) -> dict[str, int]:
    if stats is None:
        return {}
    return {
        "nodes_kept": stats.nodes_kept,
        "ways_seen": stats.ways_seen,
        "segments_seen": stats.segments_seen,
        "segments_skipped": stats.segments_skipped,
        "edges_written": stats.edges_written,
    }


def _tag(tags: Mapping[str, Any], key: str) -> str | None:
    value = tags.get(key)
    if value is None:
        return None
    return str(value).strip()


def _parse_leading_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    match = _LEADING_INT_RE.match(raw)
    if match is None:
        return None
    return int(match.group(1))


def resolve_speed_kmh(tags: Mapping[str, Any]) -> float:
    road_type = _tag(tags, "highway") or "default"
    speed_kmh = DEFAULT_SPEEDS_KMH.get(road_type, DEFAULT_SPEEDS_KMH["default"])
    maxspeed = _tag(tags, "maxspeed")
    if maxspeed:
        match = _FIRST_NUMBER_RE.search(maxspeed)
        if match is not None:
            posted = float(int(match.group(0)))
            if "mph" in maxspeed:
                posted *= MPH_TO_KMH
            # A zero limit would make every segment infinitely slow; keep the table speed.
            if posted > 0.0:
                speed_kmh = posted
    return speed_kmh


def resolve_direction(tags: Mapping[str, Any]) -> Direction:
    oneway = _tag(tags, "oneway")
    if oneway == "-1":
        return "reverse"
    if oneway in {"yes", "1"}:
        return "forward"
    if _tag(tags, "junction") == "roundabout":
        return "forward"
    highway = _tag(tags, "highway") or ""
    if "motorway" in highway and oneway != "no":
        return "forward"
    return "both"


def congestion_multiplier(tags: Mapping[str, Any]) -> float:
    lanes = _parse_leading_int(_tag(tags, "lanes"))
    if lanes is None:
        road_type = _tag(tags, "highway") or "default"
        return 0.9 if road_type in {"motorway", "motorway_link"} else 1.0
    if lanes == 1:
        return 1.15
    if lanes == 2:
        return 1.05
    if lanes >= 4:
        return 0.9
    return 1.0


def _parse_node_element(raw: Mapping[str, Any]) -> RoadNode | None:
    node_id = raw.get("id")
    if node_id is None or not isinstance(node_id, Hashable):
        return None
    lat_raw = raw.get("lat")
    lon_raw = raw.get("lon")
    if not isinstance(lat_raw, (int, float, str, Decimal)) or isinstance(lat_raw, bool):
        return None
    if not isinstance(lon_raw, (int, float, str, Decimal)) or isinstance(lon_raw, bool):
        return None
    try:
        lat = float(lat_raw)
        lon = float(lon_raw)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return RoadNode(id=node_id, lat=lat, lon=lon)


def build_road_graph(elements: Iterable[Mapping[str, Any]]) -> RoadGraph:
    """Build a directed, weighted graph from raw ``node``/``way`` elements.

    Each consecutive node pair of a way becomes one or two directed edges
    carrying ``EdgeCost(time, distance)``. Reinserting an edge for the same
    ordered pair overwrites it, so when ways overlap the last way wins.
    Segments that reference unknown nodes are skipped. An input without usable
    nodes yields an empty graph; callers decide whether that is fatal
    (see ``RoadGraph.require_non_empty``).
    """
    element_list = [e for e in elements if isinstance(e, Mapping)]

    nodes: dict[NodeId, RoadNode] = {}
    for raw in element_list:
        if raw.get("type") != "node":
            continue
        node = _parse_node_element(raw)
        if node is not None:
            nodes[node.id] = node

    ways_seen = 0
    segments_seen = 0
    segments_skipped = 0
    edges_written = 0
    for raw in element_list:
        if raw.get("type") != "way":
            continue
        node_refs = raw.get("nodes")
        if not isinstance(node_refs, (list, tuple)):
            continue
        tags = raw.get("tags")
        if not isinstance(tags, Mapping):
            tags = {}
        ways_seen += 1

        speed_mps = resolve_speed_kmh(tags) * 1000.0 / 3600.0
        direction = resolve_direction(tags)
        congestion = congestion_multiplier(tags)

        for a_id, b_id in zip(node_refs, node_refs[1:]):
            segments_seen += 1
            node_a = nodes.get(a_id) if isinstance(a_id, Hashable) else None
            node_b = nodes.get(b_id) if isinstance(b_id, Hashable) else None
            if node_a is None or node_b is None:
                segments_skipped += 1
                continue
            distance = haversine_m(node_a.lat, node_a.lon, node_b.lat, node_b.lon)
            cost = EdgeCost(time=(distance / speed_mps) * congestion, distance=distance)
            if direction == "reverse":
                node_b.adj[node_a.id] = cost
                edges_written += 1
            elif direction == "forward":
                node_a.adj[node_b.id] = cost
                edges_written += 1
            else:
                node_a.adj[node_b.id] = cost
                node_b.adj[node_a.id] = cost
                edges_written += 2

    stats = GraphBuildStats(
        nodes_kept=len(nodes),
        ways_seen=ways_seen,
        segments_seen=segments_seen,
        segments_skipped=segments_skipped,
        edges_written=edges_written,
    )
    log_event("road_graph_built", **_stats_dict(stats))
    return RoadGraph(nodes=nodes, stats=stats)
