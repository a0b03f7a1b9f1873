from __future__ import annotations

import math

import pytest

from roadrouter.geo import (
    EARTH_RADIUS_M,
    Bounds,
    haversine_m,
    is_route_key,
    round_coord,
    route_pair_key,
    square_bounds,
)


def test_haversine_matches_arc_length() -> None:
    assert haversine_m(51.5, -0.1, 51.5, -0.1) == 0.0
    one_degree = EARTH_RADIUS_M * math.pi / 180.0
    assert haversine_m(0.0, 0.0, 0.0, 1.0) == pytest.approx(one_degree, rel=1e-9)
    assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(one_degree, rel=1e-9)
    assert haversine_m(10.0, 20.0, 11.0, 21.0) == pytest.approx(haversine_m(11.0, 21.0, 10.0, 20.0))


def test_round_coord_is_half_up() -> None:
    assert round_coord(-0.1278) == -0.13
    assert round_coord(2.3522) == 2.35
    assert round_coord(-0.125) == -0.12


def test_bounds_cache_key_rounds_to_two_decimals_and_parses_back() -> None:
    bounds = Bounds(south=51.5049, west=-0.1234, north=51.5151, east=-0.1)
    key = bounds.cache_key()
    assert key == "51.5,-0.12,51.52,-0.1"
    assert Bounds.from_key(key) == Bounds(51.5, -0.12, 51.52, -0.1)

    with pytest.raises(ValueError):
        Bounds.from_key("1,2,3")


def test_route_pair_key_format() -> None:
    key = route_pair_key((51.5074, -0.1278), (48.8566, 2.3522))
    assert key == "route_51.51,-0.13_to_48.86,2.35"
    assert is_route_key(key)
    assert not is_route_key("51.5,-0.12,51.52,-0.1")


def test_containment_and_overlap_ratio() -> None:
    cached = Bounds(0.0, 0.0, 1.0, 1.0)

    assert cached.contains(Bounds(0.1, 0.1, 0.9, 0.9))
    assert cached.contains(cached)
    assert not cached.contains(Bounds(0.1, 0.1, 1.1, 0.9))

    assert cached.overlap_ratio(Bounds(0.15, 0.0, 1.15, 1.0)) == pytest.approx(0.85)
    assert cached.overlap_ratio(Bounds(0.5, 0.0, 1.5, 1.0)) == pytest.approx(0.5)
    assert cached.overlap_ratio(Bounds(2.0, 2.0, 3.0, 3.0)) == 0.0
    # touching edges do not intersect
    assert cached.overlap_ratio(Bounds(1.0, 0.0, 2.0, 1.0)) == 0.0
    # ratio is relative to the query box, not the cached one
    assert cached.overlap_ratio(Bounds(-1.0, -1.0, 2.0, 2.0)) == pytest.approx(1.0 / 9.0)


def test_square_bounds_and_padding() -> None:
    square = square_bounds((0.0, 0.0), (1.0, 2.0))
    assert square == Bounds(-0.5, 0.0, 1.5, 2.0)
    assert square.lat_span == pytest.approx(square.lon_span)

    padded = Bounds(0.0, 0.0, 1.0, 2.0).pad(0.5)
    assert padded == Bounds(-0.5, -1.0, 1.5, 3.0)

    point = square_bounds((1.0, 1.0), (1.0, 1.0))
    assert point.is_degenerate()
    assert point.pad(0.5).is_degenerate()


def test_bounds_around_points() -> None:
    box = Bounds.around([(1.0, 5.0), (-2.0, 3.0), (0.5, 7.0)])
    assert box == Bounds(-2.0, 3.0, 1.0, 7.0)
    assert box.center() == (-0.5, 5.0)
    assert box.area == pytest.approx(12.0)
    with pytest.raises(ValueError):
        Bounds.around([])
