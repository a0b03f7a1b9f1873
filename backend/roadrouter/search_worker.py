from __future__ import annotations

import asyncio
import multiprocessing
import threading
import time
from multiprocessing.connection import Connection
from typing import Any

from .astar import CostMode, SearchResult, astar_search, graph_speed_bound_mps
from .errors import (
    PathNotFoundError,
    RoutingError,
    SearchCancelledError,
    SearchFailedError,
    error_from_payload,
)
from .logging_utils import log_event
from .road_graph import EdgeCost, NodeId, RoadGraph, RoadNode
from .settings import settings

_POLL_INTERVAL_S = 0.05


def graph_to_snapshot(graph: RoadGraph) -> list[list[Any]]:
    """Flatten a graph into plain lists for the worker request message."""
    return [
        [
            node.id,
            {
                "lat": node.lat,
                "lon": node.lon,
                "adj": [[nid, cost.time, cost.distance] for nid, cost in node.adj.items()],
            },
        ]
        for node in graph.nodes.values()
    ]


def graph_from_snapshot(snapshot: list[list[Any]]) -> RoadGraph:
    nodes: dict[NodeId, RoadNode] = {}
    for node_id, raw in snapshot:
        nodes[node_id] = RoadNode(
            id=node_id,
            lat=float(raw["lat"]),
            lon=float(raw["lon"]),
            adj={nid: EdgeCost(time=float(t), distance=float(d)) for nid, t, d in raw["adj"]},
        )
    return RoadGraph(nodes=nodes)


def build_search_request(
    graph: RoadGraph,
    start_id: NodeId,
    goal_id: NodeId,
    *,
    mode: CostMode,
    max_speed_mps: float | None = None,
    batch_size: int | None = None,
) -> dict[str, Any]:
    if max_speed_mps is None:
        max_speed_mps = graph_speed_bound_mps(graph)
    return {
        "graph": graph_to_snapshot(graph),
        "start_id": start_id,
        "goal_id": goal_id,
        "mode": mode,
        "max_speed_mps": float(max_speed_mps),
        "batch_size": int(batch_size or settings.search_trace_batch_size),
    }


def _optional_speed(value: Any) -> float | None:
    return None if value is None else float(value)


def handle_search_request(request: dict[str, Any]) -> dict[str, Any]:
    """Run one search request and return exactly one response message.

    Response is ``{"type": "done", "payload": ...}`` or
    ``{"type": "error", "reason_code": ..., "message": ...}``.
    """
    try:
        graph = graph_from_snapshot(request["graph"])
        result = astar_search(
            graph,
            request["start_id"],
            request["goal_id"],
            mode=request.get("mode", "time"),
            max_speed_mps=_optional_speed(request.get("max_speed_mps")),
            batch_size=request.get("batch_size"),
        )
    except PathNotFoundError as exc:
        return {"type": "error", **exc.to_payload(), "trace": exc.trace}
    except RoutingError as exc:
        return {"type": "error", **exc.to_payload()}
    except (KeyError, TypeError, ValueError) as exc:
        return {
            "type": "error",
            "reason_code": "search_failed",
            "message": f"Malformed search request: {type(exc).__name__}: {exc}",
        }
    return {"type": "done", "payload": result.to_payload()}


def _worker_main(request: dict[str, Any], conn: Connection) -> None:
    try:
        conn.send(handle_search_request(request))
    finally:
        conn.close()


class SearchTask:
    """A* search in an isolated process, reachable only through messages.

    ``cancel()`` terminates the process; once cancelled, any response the
    worker may have produced is discarded and ``result()`` raises
    ``SearchCancelledError``.
    """

    def __init__(
        self,
        request: dict[str, Any],
        *,
        mp_context: multiprocessing.context.BaseContext | None = None,
    ) -> None:
        self._request = request
        self._ctx = mp_context or multiprocessing.get_context()
        self._lock = threading.Lock()
        self._process: multiprocessing.process.BaseProcess | None = None
        self._conn: Connection | None = None
        self._cancelled = False
        self._started_monotonic: float | None = None

    @classmethod
    def for_graph(
        cls,
        graph: RoadGraph,
        start_id: NodeId,
        goal_id: NodeId,
        *,
        mode: CostMode,
        max_speed_mps: float | None = None,
        batch_size: int | None = None,
    ) -> "SearchTask":
        request = build_search_request(
            graph,
            start_id,
            goal_id,
            mode=mode,
            max_speed_mps=max_speed_mps,
            batch_size=batch_size,
        )
        return cls(request)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def running(self) -> bool:
        process = self._process
        return process is not None and process.is_alive()

    def start(self) -> "SearchTask":
        with self._lock:
            if self._process is not None:
                raise RuntimeError("search task already started")
            if self._cancelled:
                raise SearchCancelledError()
            parent_conn, child_conn = self._ctx.Pipe(duplex=False)
            process = self._ctx.Process(
                target=_worker_main,
                args=(self._request, child_conn),
                name="astar-search",
                daemon=True,
            )
            process.start()
            child_conn.close()
            self._process = process
            self._conn = parent_conn
            self._started_monotonic = time.monotonic()
        log_event("search_task_started", worker_pid=process.pid, mode=self._request.get("mode"))
        return self

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            process = self._process
            conn = self._conn
        if process is not None and process.is_alive():
            process.terminate()
            process.join(timeout=5.0)
        if conn is not None:
            conn.close()
        log_event("search_task_cancelled", worker_pid=process.pid if process is not None else None)

    def result(self, timeout: float | None = None) -> SearchResult:
        if self._process is None:
            self.start()
        conn = self._conn
        process = self._process
        if conn is None or process is None:
            raise SearchFailedError(message="Search worker was not started.")

        deadline = None if timeout is None else time.monotonic() + float(timeout)
        message: dict[str, Any] | None = None
        while message is None:
            if self._cancelled:
                raise SearchCancelledError()
            if deadline is not None and time.monotonic() >= deadline:
                self.cancel()
                raise SearchCancelledError(
                    message="Route search timed out.",
                    details={"timeout_s": timeout},
                )
            try:
                if conn.poll(_POLL_INTERVAL_S):
                    message = conn.recv()
                elif not process.is_alive() and not conn.poll():
                    raise SearchFailedError(
                        message=f"Search worker exited without a result (exitcode={process.exitcode}).",
                    )
            except (EOFError, OSError) as exc:
                if self._cancelled:
                    raise SearchCancelledError() from exc
                raise SearchFailedError(
                    message=f"Error in search worker: {type(exc).__name__}: {exc}",
                ) from exc

        process.join(timeout=5.0)
        conn.close()
        if self._cancelled:
            raise SearchCancelledError()

        elapsed_ms = None
        if self._started_monotonic is not None:
            elapsed_ms = round((time.monotonic() - self._started_monotonic) * 1000.0, 2)
        if message.get("type") == "done":
            result = SearchResult.from_payload(message["payload"])
            log_event(
                "search_task_done",
                mode=result.mode,
                explored=result.explored,
                path_nodes=len(result.node_ids),
                elapsed_ms=elapsed_ms,
            )
            return result
        error = error_from_payload(message)
        log_event(
            "search_task_error",
            reason_code=error.reason_code,
            error_message=error.message,
            elapsed_ms=elapsed_ms,
        )
        raise error

    def __enter__(self) -> "SearchTask":
        return self.start()

    def __exit__(self, *_exc: object) -> None:
        if self.running:
            self.cancel()


def run_search(
    graph: RoadGraph,
    start_id: NodeId,
    goal_id: NodeId,
    *,
    mode: CostMode = "time",
    max_speed_mps: float | None = None,
    batch_size: int | None = None,
    timeout: float | None = None,
) -> SearchResult:
    task = SearchTask.for_graph(
        graph,
        start_id,
        goal_id,
        mode=mode,
        max_speed_mps=max_speed_mps,
        batch_size=batch_size,
    )
    with task:
        return task.result(timeout=timeout if timeout is not None else settings.search_task_timeout_s)


async def run_search_async(
    graph: RoadGraph,
    start_id: NodeId,
    goal_id: NodeId,
    *,
    mode: CostMode = "time",
    max_speed_mps: float | None = None,
    batch_size: int | None = None,
    timeout: float | None = None,
) -> SearchResult:
    """Await an isolated search; cancelling the awaiting coroutine kills the worker."""
    task = SearchTask.for_graph(
        graph,
        start_id,
        goal_id,
        mode=mode,
        max_speed_mps=max_speed_mps,
        batch_size=batch_size,
    ).start()
    try:
        return await asyncio.to_thread(
            task.result,
            timeout if timeout is not None else settings.search_task_timeout_s,
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
