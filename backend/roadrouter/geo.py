from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def round_coord(value: float, precision: int = 2) -> float:
    scale = 10**precision
    # Half-up like Math.round so keys stay stable for the same rounded box.
    return math.floor(float(value) * scale + 0.5) / scale


def _fmt(value: float) -> str:
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


@dataclass(frozen=True)
class Bounds:
    south: float
    west: float
    north: float
    east: float

    @classmethod
    def around(cls, points: list[tuple[float, float]]) -> "Bounds":
        if not points:
            raise ValueError("cannot compute bounds of zero points")
        lats = [p[0] for p in points]
        lons = [p[1] for p in points]
        return cls(south=min(lats), west=min(lons), north=max(lats), east=max(lons))

    @classmethod
    def from_key(cls, key: str) -> "Bounds":
        parts = [float(p) for p in key.split(",")]
        if len(parts) != 4:
            raise ValueError(f"invalid bounds key: {key!r}")
        south, west, north, east = parts
        return cls(south=south, west=west, north=north, east=east)

    @property
    def lat_span(self) -> float:
        return self.north - self.south

    @property
    def lon_span(self) -> float:
        return self.east - self.west

    @property
    def area(self) -> float:
        return max(0.0, self.lat_span) * max(0.0, self.lon_span)

    def center(self) -> tuple[float, float]:
        return ((self.south + self.north) / 2.0, (self.west + self.east) / 2.0)

    def is_degenerate(self) -> bool:
        return self.lat_span <= 0.0 or self.lon_span <= 0.0

    def contains(self, other: "Bounds") -> bool:
        return (
            self.south <= other.south
            and self.west <= other.west
            and self.north >= other.north
            and self.east >= other.east
        )

    def overlap_ratio(self, other: "Bounds") -> float:
        """Intersection area as a fraction of ``other``'s area (0.0 when disjoint)."""
        south = max(self.south, other.south)
        north = min(self.north, other.north)
        west = max(self.west, other.west)
        east = min(self.east, other.east)
        if north <= south or east <= west:
            return 0.0
        target_area = other.area
        if target_area <= 0.0:
            return 0.0
        return ((north - south) * (east - west)) / target_area

    def pad(self, ratio: float) -> "Bounds":
        lat_pad = abs(self.lat_span) * ratio
        lon_pad = abs(self.lon_span) * ratio
        return Bounds(
            south=self.south - lat_pad,
            west=self.west - lon_pad,
            north=self.north + lat_pad,
            east=self.east + lon_pad,
        )

    def rounded(self, precision: int = 2) -> "Bounds":
        return Bounds(
            south=round_coord(self.south, precision),
            west=round_coord(self.west, precision),
            north=round_coord(self.north, precision),
            east=round_coord(self.east, precision),
        )

    def cache_key(self, precision: int = 2) -> str:
        r = self.rounded(precision)
        return f"{_fmt(r.south)},{_fmt(r.west)},{_fmt(r.north)},{_fmt(r.east)}"

    def to_dict(self) -> dict[str, float]:
        return {"south": self.south, "west": self.west, "north": self.north, "east": self.east}


def route_pair_key(
    start: tuple[float, float],
    end: tuple[float, float],
    precision: int = 2,
) -> str:
    s_lat, s_lon = (round_coord(v, precision) for v in start)
    e_lat, e_lon = (round_coord(v, precision) for v in end)
    return f"route_{_fmt(s_lat)},{_fmt(s_lon)}_to_{_fmt(e_lat)},{_fmt(e_lon)}"


def is_route_key(key: str) -> bool:
    return key.startswith("route_")


def square_bounds(start: tuple[float, float], end: tuple[float, float]) -> Bounds:
    """Square box on the start/end midpoint, sized by the larger lat/lon span."""
    box = Bounds.around([start, end])
    center_lat, center_lon = box.center()
    half_span = max(box.lat_span, box.lon_span) / 2.0
    return Bounds(
        south=center_lat - half_span,
        west=center_lon - half_span,
        north=center_lat + half_span,
        east=center_lon + half_span,
    )
