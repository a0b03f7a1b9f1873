from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Sequence

from roadrouter.astar import astar_search, graph_speed_bound_mps
from roadrouter.errors import RoutingError
from roadrouter.planner import count_trace_segments, format_distance, format_duration, route_over_elements
from roadrouter.search_worker import run_search


def _parse_coord(raw: str) -> tuple[float, float]:
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"expected 'lat,lon', got {raw!r}")
    try:
        return (float(parts[0]), float(parts[1]))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected 'lat,lon', got {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Route between two coordinates over a raw map-elements JSON file."
    )
    parser.add_argument("--elements", required=True, help="JSON file: list of elements or {'elements': [...]}")
    parser.add_argument("--start", required=True, type=_parse_coord, help="lat,lon")
    parser.add_argument("--end", required=True, type=_parse_coord, help="lat,lon")
    parser.add_argument("--mode", choices=("time", "distance"), default="time")
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="Run the search in this process instead of an isolated worker.",
    )
    parser.add_argument("--out-file", default=None)
    return parser


def load_elements(path: str) -> list[dict[str, Any]]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("elements", [])
    if not isinstance(payload, list):
        raise ValueError("elements JSON must be a list or an object with 'elements'")
    return [e for e in payload if isinstance(e, dict)]


def _inprocess_search(graph, start_id, goal_id, *, mode, max_speed_mps):
    return astar_search(graph, start_id, goal_id, mode=mode, max_speed_mps=max_speed_mps)


def run_route(args: argparse.Namespace) -> dict[str, Any]:
    elements = load_elements(args.elements)
    search = _inprocess_search if args.in_process else run_search
    try:
        graph, start_snap, end_snap, result, _bounds = route_over_elements(
            elements,
            args.start,
            args.end,
            mode=args.mode,
            search=search,
        )
    except RoutingError as exc:
        record: dict[str, Any] = {"ok": False, **exc.to_payload()}
    else:
        totals = graph.path_totals(result.node_ids)
        record = {
            "ok": True,
            "mode": args.mode,
            "start_node": start_snap.node.id,
            "end_node": end_snap.node.id,
            "total_time_s": round(totals.time, 2),
            "total_distance_m": round(totals.distance, 2),
            "travel_time": format_duration(totals.time),
            "distance": format_distance(totals.distance),
            "nodes_explored": count_trace_segments(result.trace),
            "speed_bound_mps": round(graph_speed_bound_mps(graph), 3),
            "path": [[p["lat"], p["lon"]] for p in result.path],
        }
    if args.out_file:
        out = Path(args.out_file)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(record, indent=2), encoding="utf-8")
    return record


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    record = run_route(args)
    print(json.dumps({k: v for k, v in record.items() if k != "path"}, indent=2))
    return 0 if record.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
