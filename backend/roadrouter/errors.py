from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "empty_graph",
        "node_snap_failed",
        "path_not_found",
        "search_failed",
        "search_cancelled",
    }
)


@dataclass
class RoutingError(Exception):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        return {
            "reason_code": self.reason_code,
            "message": self.message,
            "details": dict(self.details or {}),
        }


@dataclass
class EmptyGraphError(RoutingError):
    """Raw input produced zero usable nodes; no route is possible from it."""

    reason_code: str = "empty_graph"
    message: str = "Failed to build road graph: the map data is empty or invalid."


@dataclass
class PathNotFoundError(RoutingError):
    """Search exhausted the open set. Retryable with a larger input region.

    ``trace`` keeps whatever exploration batches were accumulated before exhaustion.
    """

    reason_code: str = "path_not_found"
    message: str = "No path could be found."
    trace: list[list[dict[str, dict[str, float]]]] = field(default_factory=list)


@dataclass
class NodeSnapFailedError(PathNotFoundError):
    reason_code: str = "node_snap_failed"
    message: str = "Could not find nearby roads. The map area might be too small."


@dataclass
class SearchFailedError(RoutingError):
    reason_code: str = "search_failed"
    message: str = "Route search failed."


@dataclass
class SearchCancelledError(RoutingError):
    reason_code: str = "search_cancelled"
    message: str = "Route search was cancelled."


_ERROR_TYPES: dict[str, type[RoutingError]] = {
    "empty_graph": EmptyGraphError,
    "node_snap_failed": NodeSnapFailedError,
    "path_not_found": PathNotFoundError,
    "search_failed": SearchFailedError,
    "search_cancelled": SearchCancelledError,
}


def normalize_reason_code(reason_code: str, *, default: str = "search_failed") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def error_from_payload(payload: dict[str, Any]) -> RoutingError:
    """Rebuild a typed error from a worker ``{"type": "error", ...}`` message."""
    code = normalize_reason_code(str(payload.get("reason_code", "")))
    error_type = _ERROR_TYPES[code]
    message = str(payload.get("message") or "").strip() or error_type().message
    details = payload.get("details") if isinstance(payload.get("details"), dict) else None
    if issubclass(error_type, PathNotFoundError):
        trace = payload.get("trace")
        return error_type(
            message=message,
            details=details,
            trace=list(trace) if isinstance(trace, list) else [],
        )
    return error_type(message=message, details=details)
