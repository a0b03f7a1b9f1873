from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

CostModeName = Literal["time", "distance"]


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lon)


class BoundsModel(BaseModel):
    south: float = Field(..., ge=-90, le=90)
    west: float = Field(..., ge=-180, le=180)
    north: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)


class RouteRequest(BaseModel):
    """Raw map elements plus the two endpoints to route between."""

    elements: list[dict[str, Any]] = Field(default_factory=list)
    start: LatLng
    end: LatLng
    mode: CostModeName = "time"
    bounds: BoundsModel | None = None
    include_trace: bool = True

    @field_validator("elements")
    @classmethod
    def only_objects(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [e for e in v if isinstance(e, dict)]


class PathPoint(BaseModel):
    id: int | str
    lat: float
    lon: float


class TracePoint(BaseModel):
    lat: float
    lon: float


class TraceSegmentModel(BaseModel):
    from_: TracePoint = Field(..., alias="from")
    to: TracePoint

    model_config = {"populate_by_name": True}


class RouteMetrics(BaseModel):
    total_time_s: float
    total_distance_m: float
    travel_time: str
    distance: str
    nodes_explored: int


class RouteResponse(BaseModel):
    mode: CostModeName
    start_node: int | str
    end_node: int | str
    start_snap_m: float
    end_snap_m: float
    path: list[PathPoint]
    metrics: RouteMetrics
    trace: list[list[TraceSegmentModel]] = Field(default_factory=list)
    graph_nodes: int


class CacheStoreStats(BaseModel):
    size: int
    hits: int
    misses: int
    evictions: int
    expired: int
    ttl_s: float
    max_entries: int


class CacheStatsResponse(BaseModel):
    geocoding: int
    map_data: int
    details: dict[str, CacheStoreStats]


class CacheClearResponse(BaseModel):
    cleared: dict[str, int]


class CacheCleanupResponse(BaseModel):
    removed: dict[str, int]
    stats: dict[str, int]


class ErrorDetail(BaseModel):
    reason_code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
