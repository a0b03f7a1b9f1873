from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    # Keep logs and cache snapshots in backend/out by default to avoid polluting sources.
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Cache manager. An empty CACHE_DIR resolves to OUT_DIR/cache.
    cache_dir: str = Field(default="", alias="CACHE_DIR")
    geocoding_cache_ttl_s: int = Field(default=7 * 24 * 3600, ge=1, alias="GEOCODING_CACHE_TTL_S")
    geocoding_cache_max_entries: int = Field(default=100, ge=1, alias="GEOCODING_CACHE_MAX_ENTRIES")
    map_data_cache_ttl_s: int = Field(default=3 * 24 * 3600, ge=1, alias="MAP_DATA_CACHE_TTL_S")
    map_data_cache_max_entries: int = Field(default=20, ge=1, alias="MAP_DATA_CACHE_MAX_ENTRIES")
    cache_cleanup_interval_s: int = Field(default=30 * 60, ge=1, alias="CACHE_CLEANUP_INTERVAL_S")
    cache_overlap_threshold: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        alias="CACHE_OVERLAP_THRESHOLD",
    )
    cache_key_precision: int = Field(default=2, ge=0, le=6, alias="CACHE_KEY_PRECISION")

    # Spatial index / snapping
    spatial_grid_size: int = Field(default=100, ge=1, le=2000, alias="SPATIAL_GRID_SIZE")
    snap_max_distance_m: float = Field(default=20_000.0, gt=0.0, alias="SNAP_MAX_DISTANCE_M")

    # Search
    search_trace_batch_size: int = Field(default=500, ge=1, alias="SEARCH_TRACE_BATCH_SIZE")
    search_task_timeout_s: float | None = Field(default=None, alias="SEARCH_TASK_TIMEOUT_S")

    # Planner attempt policy (bounding-box padding around the start/end square)
    planner_long_route_km: float = Field(default=75.0, gt=0.0, alias="PLANNER_LONG_ROUTE_KM")
    planner_padding_long: float = Field(default=0.1, ge=0.0, alias="PLANNER_PADDING_LONG")
    planner_padding_short: float = Field(default=0.2, ge=0.0, alias="PLANNER_PADDING_SHORT")
    planner_retry_padding_long: float = Field(default=0.4, ge=0.0, alias="PLANNER_RETRY_PADDING_LONG")
    planner_retry_padding_short: float = Field(default=0.5, ge=0.0, alias="PLANNER_RETRY_PADDING_SHORT")

    @model_validator(mode="after")
    def _normalise(self) -> "Settings":
        if self.search_task_timeout_s is not None and self.search_task_timeout_s <= 0:
            self.search_task_timeout_s = None
        self.log_level = str(self.log_level or "INFO").strip().upper() or "INFO"
        return self

    def resolved_cache_dir(self) -> Path:
        explicit = (self.cache_dir or "").strip()
        if explicit:
            return Path(explicit)
        return Path(self.out_dir) / "cache"


settings = Settings()
