from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from roadrouter.settings import settings


def _node(node_id: int, lat: float, lon: float) -> dict[str, Any]:
    return {"type": "node", "id": node_id, "lat": lat, "lon": lon}


def _way(way_id: int, nodes: list[int], **tags: str) -> dict[str, Any]:
    return {"type": "way", "id": way_id, "nodes": nodes, "tags": tags}


def grid_elements() -> list[dict[str, Any]]:
    """Two parallel east-west roads (south residential, north primary) joined by three links.

    1 -- 2 -- 3      (51.500, residential)
    |    |    |
    4 -- 5 -- 6      (51.505, primary)
    """
    return [
        _node(1, 51.500, -0.100),
        _node(2, 51.500, -0.095),
        _node(3, 51.500, -0.090),
        _node(4, 51.505, -0.100),
        _node(5, 51.505, -0.095),
        _node(6, 51.505, -0.090),
        _way(100, [1, 2, 3], highway="residential"),
        _way(101, [4, 5, 6], highway="primary"),
        _way(102, [1, 4], highway="residential"),
        _way(103, [3, 6], highway="residential"),
        _way(104, [2, 5], highway="residential"),
    ]


def disconnected_elements() -> list[dict[str, Any]]:
    return [
        _node(1, 51.500, -0.100),
        _node(2, 51.500, -0.095),
        _node(3, 51.500, -0.090),
        _way(100, [1, 2], highway="residential"),
    ]


def motorway_detour_elements() -> list[dict[str, Any]]:
    """Direct 1.0 km three-lane motorway 1->3 and a 1.05 km untagged motorway 1->2->3.

    Untagged motorways run at 0.9x, about 122 km/h, so the longer detour is faster.
    """
    return [
        _node(1, 0.0, 0.0),
        _node(2, 0.00048339, 0.00075842),
        _node(3, 0.0089932, 0.0),
        _way(200, [1, 3], highway="motorway", lanes="3"),
        _way(201, [1, 2, 3], highway="motorway"),
    ]


START = (51.5001, -0.1001)
END = (51.5001, -0.0899)


@pytest.fixture
def elements() -> list[dict[str, Any]]:
    return grid_elements()


@pytest.fixture
def disconnected() -> list[dict[str, Any]]:
    return disconnected_elements()


@pytest.fixture
def motorway_detour() -> list[dict[str, Any]]:
    return motorway_detour_elements()


@pytest.fixture
def endpoints() -> tuple[tuple[float, float], tuple[float, float]]:
    """Start just off node 1, end just off node 3."""
    return (START, END)


@pytest.fixture(autouse=True)
def _isolated_out_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "out_dir", str(tmp_path / "out"))
    monkeypatch.setattr(settings, "cache_dir", str(tmp_path / "cache"))
    yield
