from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor

import pytest

from roadrouter.astar import astar_search, graph_speed_bound_mps, heuristic
from roadrouter.errors import PathNotFoundError, SearchCancelledError, SearchFailedError
from roadrouter.geo import haversine_m
from roadrouter.road_graph import MAX_SPEED_MPS, EdgeCost, RoadGraph, RoadNode, build_road_graph


def _hand_graph() -> RoadGraph:
    """Five one-way nodes packed within ~50 m; edge costs dominate the heuristic.

    distance-optimal A->E: A B C D E (400 m)
    time-optimal A->E:     A B D E   (90 s)
    """
    coords = {
        "A": (0.0, 0.0),
        "B": (0.0, 0.0001),
        "C": (0.0001, 0.0001),
        "D": (0.0002, 0.0002),
        "E": (0.0003, 0.0003),
    }
    nodes = {nid: RoadNode(id=nid, lat=lat, lon=lon) for nid, (lat, lon) in coords.items()}
    edges = {
        ("A", "B"): EdgeCost(time=50.0, distance=100.0),
        ("A", "C"): EdgeCost(time=20.0, distance=300.0),
        ("B", "C"): EdgeCost(time=40.0, distance=100.0),
        ("B", "D"): EdgeCost(time=30.0, distance=400.0),
        ("C", "D"): EdgeCost(time=70.0, distance=100.0),
        ("D", "E"): EdgeCost(time=10.0, distance=100.0),
    }
    for (u, v), cost in edges.items():
        nodes[u].adj[v] = cost
    return RoadGraph(nodes=nodes)


def _segment(graph: RoadGraph, u: str, v: str) -> dict:
    a, b = graph.nodes[u], graph.nodes[v]
    return {"from": {"lat": a.lat, "lon": a.lon}, "to": {"lat": b.lat, "lon": b.lon}}


def test_distance_mode_finds_shortest_path() -> None:
    graph = _hand_graph()
    result = astar_search(graph, "A", "E", mode="distance")
    assert result.node_ids == ("A", "B", "C", "D", "E")
    assert result.cost == pytest.approx(400.0)
    assert result.mode == "distance"
    assert [p["id"] for p in result.path] == list(result.node_ids)
    assert result.path[0] == {"id": "A", "lat": 0.0, "lon": 0.0}


def test_time_mode_finds_fastest_path() -> None:
    graph = _hand_graph()
    result = astar_search(graph, "A", "E", mode="time")
    assert result.node_ids == ("A", "B", "D", "E")
    assert result.cost == pytest.approx(90.0)
    assert graph.path_totals(result.node_ids).time == pytest.approx(90.0)


def test_trace_records_each_closed_node_in_pop_order() -> None:
    graph = _hand_graph()
    result = astar_search(graph, "A", "E", mode="distance")
    assert result.trace == [
        [_segment(graph, "A", "B"), _segment(graph, "B", "C"), _segment(graph, "C", "D")]
    ]
    assert result.explored == 4

    timed = astar_search(graph, "A", "E", mode="time")
    assert timed.trace == [
        [_segment(graph, "A", "C"), _segment(graph, "A", "B"), _segment(graph, "B", "D")]
    ]


def test_trace_is_split_into_batches() -> None:
    graph = _hand_graph()
    result = astar_search(graph, "A", "E", mode="distance", batch_size=2)
    assert [len(batch) for batch in result.trace] == [2, 1]
    flat = list(itertools.chain.from_iterable(result.trace))
    assert flat[-1] == _segment(graph, "C", "D")


def test_start_equal_to_goal() -> None:
    graph = _hand_graph()
    result = astar_search(graph, "C", "C")
    assert result.node_ids == ("C",)
    assert result.cost == 0.0
    assert result.trace == []


def test_unreachable_goal_raises_with_trace() -> None:
    graph = _hand_graph()
    with pytest.raises(PathNotFoundError) as exc:
        astar_search(graph, "B", "A", mode="distance")
    err = exc.value
    assert err.reason_code == "path_not_found"
    assert err.details == {"explored": 4}
    assert sum(len(batch) for batch in err.trace) == 3


def test_bad_inputs_are_search_failures() -> None:
    graph = _hand_graph()
    with pytest.raises(SearchFailedError):
        astar_search(graph, "A", "missing")
    with pytest.raises(SearchFailedError):
        astar_search(graph, "A", "E", mode="fuel")  # type: ignore[arg-type]
    with pytest.raises(SearchFailedError):
        astar_search(graph, "A", "E", mode="time", max_speed_mps=0.0)


def test_should_stop_cancels_the_search() -> None:
    with pytest.raises(SearchCancelledError):
        astar_search(_hand_graph(), "A", "E", should_stop=lambda: True)


def test_graph_is_not_mutated_and_concurrent_searches_agree(elements: list[dict]) -> None:
    graph = build_road_graph(elements)
    before = {nid: dict(node.adj) for nid, node in graph.nodes.items()}
    expected = astar_search(graph, 1, 3)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: astar_search(graph, 1, 3), range(8)))

    assert all(r.node_ids == expected.node_ids for r in results)
    assert all(r.trace == expected.trace for r in results)
    for nid, node in graph.nodes.items():
        assert set(vars(node)) == {"id", "lat", "lon", "adj"}
        assert node.adj == before[nid]


def test_heuristics_never_overestimate(elements: list[dict]) -> None:
    graph = build_road_graph(elements)
    bound = graph_speed_bound_mps(graph)
    for start_id, goal_id in itertools.permutations(graph.nodes, 2):
        start = graph.nodes[start_id]
        goal = graph.nodes[goal_id]
        # a huge speed bound makes the time search a plain Dijkstra
        exact_time = astar_search(graph, start_id, goal_id, mode="time", max_speed_mps=1e12).cost
        assert heuristic(start, goal, mode="time", max_speed_mps=bound) <= exact_time + 1e-9
        exact_distance = astar_search(graph, start_id, goal_id, mode="distance").cost
        assert heuristic(start, goal, mode="distance") <= exact_distance + 1e-9
        assert heuristic(start, goal, mode="distance") == pytest.approx(
            haversine_m(start.lat, start.lon, goal.lat, goal.lon)
        )


def test_time_search_matches_dijkstra(elements: list[dict]) -> None:
    graph = build_road_graph(elements)
    bound = graph_speed_bound_mps(graph)
    for start_id, goal_id in itertools.permutations(graph.nodes, 2):
        fast = astar_search(graph, start_id, goal_id, mode="time", max_speed_mps=bound)
        exact = astar_search(graph, start_id, goal_id, mode="time", max_speed_mps=1e12)
        assert fast.cost == pytest.approx(exact.cost)


def test_speed_bound_covers_fast_maxspeed_tags() -> None:
    elements = [
        {"type": "node", "id": 1, "lat": 0.0, "lon": 0.0},
        {"type": "node", "id": 2, "lat": 0.01, "lon": 0.0},
        {"type": "way", "id": 1, "nodes": [1, 2], "tags": {"highway": "primary", "maxspeed": "200"}},
    ]
    graph = build_road_graph(elements)
    assert graph_speed_bound_mps(graph) == pytest.approx(200.0 / 3.6)
    assert graph_speed_bound_mps(_hand_graph()) == MAX_SPEED_MPS


def test_default_speed_bound_keeps_fast_motorways_optimal(motorway_detour: list[dict]) -> None:
    graph = build_road_graph(motorway_detour)
    assert graph_speed_bound_mps(graph) > MAX_SPEED_MPS

    exact = astar_search(graph, 1, 3, mode="time", max_speed_mps=1e12)
    assert exact.node_ids == (1, 2, 3)

    result = astar_search(graph, 1, 3, mode="time")
    assert result.node_ids == (1, 2, 3)
    assert result.cost == pytest.approx(exact.cost)
