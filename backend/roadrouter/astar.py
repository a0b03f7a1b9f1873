from __future__ import annotations

import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from .errors import PathNotFoundError, SearchCancelledError, SearchFailedError
from .geo import haversine_m
from .road_graph import MAX_SPEED_MPS, NodeId, RoadGraph, RoadNode
from .settings import settings

CostMode = Literal["time", "distance"]
COST_MODES: frozenset[str] = frozenset({"time", "distance"})

TraceSegment = dict[str, dict[str, float]]
TraceBatch = list[TraceSegment]


@dataclass
class _NodeState:
    g: float
    h: float
    f: float
    parent: NodeId | None


@dataclass
class SearchState:
    """Per-run overlay of ``g/h/f/parent`` keyed by node id.

    The shared graph is never written to, so one graph can serve repeated or
    concurrent searches.
    """

    batch_size: int
    open_heap: list[tuple[float, int, NodeId, float]] = field(default_factory=list)
    best: dict[NodeId, _NodeState] = field(default_factory=dict)
    closed: set[NodeId] = field(default_factory=set)
    trace: list[TraceBatch] = field(default_factory=list)
    batch: TraceBatch = field(default_factory=list)
    _seq: itertools.count = field(default_factory=itertools.count)

    def push(self, node_id: NodeId, *, g: float, h: float, parent: NodeId | None) -> None:
        f = g + h
        self.best[node_id] = _NodeState(g=g, h=h, f=f, parent=parent)
        heapq.heappush(self.open_heap, (f, next(self._seq), node_id, g))

    def pop(self) -> NodeId | None:
        """Pop the lowest-``f`` live entry; stale duplicates are discarded here."""
        while self.open_heap:
            _f, _seq, node_id, g = heapq.heappop(self.open_heap)
            if node_id in self.closed:
                continue
            state = self.best.get(node_id)
            if state is None or g > state.g:
                continue
            return node_id
        return None

    def record_visit(self, parent: RoadNode, node: RoadNode) -> None:
        self.batch.append(
            {
                "from": {"lat": parent.lat, "lon": parent.lon},
                "to": {"lat": node.lat, "lon": node.lon},
            }
        )
        if len(self.batch) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if self.batch:
            self.trace.append(self.batch)
            self.batch = []


@dataclass(frozen=True)
class SearchResult:
    node_ids: tuple[NodeId, ...]
    path: list[dict[str, Any]]
    trace: list[TraceBatch]
    cost: float
    mode: str
    explored: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "node_ids": list(self.node_ids),
            "path": self.path,
            "trace": self.trace,
            "cost": self.cost,
            "mode": self.mode,
            "explored": self.explored,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SearchResult":
        return cls(
            node_ids=tuple(payload.get("node_ids", ())),
            path=list(payload.get("path", [])),
            trace=list(payload.get("trace", [])),
            cost=float(payload.get("cost", 0.0)),
            mode=str(payload.get("mode", "time")),
            explored=int(payload.get("explored", 0)),
        )


def make_heuristic(
    goal: RoadNode,
    *,
    mode: CostMode,
    max_speed_mps: float = MAX_SPEED_MPS,
) -> Callable[[RoadNode], float]:
    if mode == "distance":
        return lambda node: haversine_m(node.lat, node.lon, goal.lat, goal.lon)
    speed = float(max_speed_mps)
    if speed <= 0.0:
        raise SearchFailedError(message=f"max_speed_mps must be positive, got {max_speed_mps!r}")
    return lambda node: haversine_m(node.lat, node.lon, goal.lat, goal.lon) / speed


def heuristic(
    node: RoadNode,
    goal: RoadNode,
    *,
    mode: CostMode,
    max_speed_mps: float = MAX_SPEED_MPS,
) -> float:
    return make_heuristic(goal, mode=mode, max_speed_mps=max_speed_mps)(node)


def graph_speed_bound_mps(graph: RoadGraph) -> float:
    """Upper bound on edge speed, never below the speed-table maximum.

    ``maxspeed`` tags can exceed the table, and a time heuristic divided by a
    slower speed would overestimate.
    """
    fastest = MAX_SPEED_MPS
    for node in graph.nodes.values():
        for cost in node.adj.values():
            if cost.time > 0.0:
                fastest = max(fastest, cost.distance / cost.time)
    return fastest


def _reconstruct(state: SearchState, goal_id: NodeId) -> tuple[NodeId, ...]:
    node_ids: list[NodeId] = []
    current: NodeId | None = goal_id
    while current is not None:
        node_ids.append(current)
        current = state.best[current].parent
    node_ids.reverse()
    return tuple(node_ids)


def astar_search(
    graph: RoadGraph,
    start_id: NodeId,
    goal_id: NodeId,
    *,
    mode: CostMode = "time",
    max_speed_mps: float | None = None,
    batch_size: int | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> SearchResult:
    """Best-first search over ``f = g + h`` with an exploration trace.

    Every non-start node that is popped and closed appends one
    ``{"from": parent, "to": node}`` record, grouped into batches of
    ``batch_size`` in pop order. Raises ``PathNotFoundError`` (carrying the
    trace so far) when the open set runs dry.
    """
    if mode not in COST_MODES:
        raise SearchFailedError(message=f"Unknown cost mode: {mode!r}")
    start = graph.node(start_id)
    goal = graph.node(goal_id)
    if start is None or goal is None:
        raise SearchFailedError(
            message="Start or end node not found in graph.",
            details={"start_found": start is not None, "goal_found": goal is not None},
        )

    if max_speed_mps is None:
        max_speed_mps = graph_speed_bound_mps(graph) if mode == "time" else MAX_SPEED_MPS
    h_of = make_heuristic(goal, mode=mode, max_speed_mps=max_speed_mps)
    state = SearchState(batch_size=max(1, int(batch_size or settings.search_trace_batch_size)))
    state.push(start.id, g=0.0, h=h_of(start), parent=None)

    while True:
        if should_stop is not None and should_stop():
            raise SearchCancelledError(details={"explored": len(state.closed)})
        current_id = state.pop()
        if current_id is None:
            break
        current = graph.nodes[current_id]
        current_state = state.best[current_id]

        if current_id == goal.id:
            state.flush()
            node_ids = _reconstruct(state, current_id)
            return SearchResult(
                node_ids=node_ids,
                path=[
                    {"id": nid, "lat": graph.nodes[nid].lat, "lon": graph.nodes[nid].lon}
                    for nid in node_ids
                ],
                trace=state.trace,
                cost=current_state.g,
                mode=mode,
                explored=len(state.closed),
            )

        state.closed.add(current_id)
        if current_state.parent is not None:
            state.record_visit(graph.nodes[current_state.parent], current)

        for neighbor_id, edge in current.adj.items():
            if neighbor_id in state.closed:
                continue
            neighbor = graph.nodes.get(neighbor_id)
            if neighbor is None:
                continue
            step = edge.time if mode == "time" else edge.distance
            tentative_g = current_state.g + step
            known = state.best.get(neighbor_id)
            if known is None or tentative_g < known.g:
                h = known.h if known is not None else h_of(neighbor)
                state.push(neighbor_id, g=tentative_g, h=h, parent=current_id)

    state.flush()
    raise PathNotFoundError(
        details={"explored": len(state.closed)},
        trace=state.trace,
    )
