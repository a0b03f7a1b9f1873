from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .astar import graph_speed_bound_mps
from .errors import (
    EmptyGraphError,
    PathNotFoundError,
    RoutingError,
    SearchCancelledError,
    SearchFailedError,
)
from .geo import Bounds
from .logging_utils import log_event
from .models import (
    CacheCleanupResponse,
    CacheClearResponse,
    CacheStatsResponse,
    ErrorDetail,
    RouteMetrics,
    RouteRequest,
    RouteResponse,
)
from .planner import count_trace_segments, format_distance, format_duration
from .road_graph import build_road_graph
from .route_cache import CacheManager
from .search_worker import run_search_async
from .spatial_index import GridSpatialIndex


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.cache = CacheManager()
    app.state.cache.start_periodic_cleanup()
    yield
    app.state.cache.close()


app = FastAPI(title="Road A* Router", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def cache_manager(request: Request) -> CacheManager:
    cache: CacheManager | None = getattr(request.app.state, "cache", None)  # type: ignore[attr-defined]
    if cache is None:
        raise HTTPException(status_code=503, detail="Cache manager not initialised")
    return cache


CacheDep = Annotated[CacheManager, Depends(cache_manager)]


def _status_for(error: RoutingError) -> int:
    # NodeSnapFailedError is a PathNotFoundError and maps to 404 with it.
    if isinstance(error, EmptyGraphError):
        return 422
    if isinstance(error, PathNotFoundError):
        return 404
    if isinstance(error, SearchCancelledError):
        return 504
    if isinstance(error, SearchFailedError):
        return 500
    return 500


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/route", response_model=RouteResponse)
async def compute_route(req: RouteRequest) -> RouteResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    start = req.start.as_tuple()
    end = req.end.as_tuple()

    try:
        graph = build_road_graph(req.elements).require_non_empty()
        bounds = Bounds(**req.bounds.model_dump()) if req.bounds is not None else graph.require_bounds()
        index = GridSpatialIndex(graph.nodes.values(), bounds)
        start_snap = index.snap(*start)
        end_snap = index.snap(*end)
        result = await run_search_async(
            graph,
            start_snap.node.id,
            end_snap.node.id,
            mode=req.mode,
            max_speed_mps=graph_speed_bound_mps(graph),
        )
    except RoutingError as exc:
        log_event(
            "route_request_failed",
            request_id=request_id,
            reason_code=exc.reason_code,
            error_message=exc.message,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        detail = ErrorDetail(**exc.to_payload()).model_dump()
        raise HTTPException(status_code=_status_for(exc), detail=detail) from exc

    totals = graph.path_totals(result.node_ids)
    explored = count_trace_segments(result.trace)
    log_event(
        "route_request",
        request_id=request_id,
        mode=req.mode,
        element_count=len(req.elements),
        graph_nodes=len(graph),
        path_nodes=len(result.node_ids),
        nodes_explored=explored,
        total_time_s=round(totals.time, 2),
        total_distance_m=round(totals.distance, 2),
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )

    return RouteResponse(
        mode=req.mode,
        start_node=start_snap.node.id,
        end_node=end_snap.node.id,
        start_snap_m=round(start_snap.distance_m, 2),
        end_snap_m=round(end_snap.distance_m, 2),
        path=result.path,
        metrics=RouteMetrics(
            total_time_s=round(totals.time, 2),
            total_distance_m=round(totals.distance, 2),
            travel_time=format_duration(totals.time),
            distance=format_distance(totals.distance),
            nodes_explored=explored,
        ),
        trace=result.trace if req.include_trace else [],
        graph_nodes=len(graph),
    )


@app.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(cache: CacheDep) -> CacheStatsResponse:
    counts = cache.stats()
    return CacheStatsResponse(
        geocoding=counts["geocoding"],
        map_data=counts["map_data"],
        details=cache.detailed_stats(),
    )


@app.post("/cache/cleanup", response_model=CacheCleanupResponse)
async def cache_cleanup(cache: CacheDep) -> CacheCleanupResponse:
    removed = cache.cleanup()
    return CacheCleanupResponse(removed=removed, stats=cache.stats())


@app.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(cache: CacheDep) -> CacheClearResponse:
    return CacheClearResponse(cleared=cache.clear_all())
