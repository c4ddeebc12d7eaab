from __future__ import annotations

from dataclasses import dataclass

from shapely.geometry import Polygon
from shapely.geometry import box as shapely_box


@dataclass(frozen=True)
class BBox:
    """
    WGS84 bounding box in lon/lat degrees.

    Convention used throughout this repo:
    - minLon, minLat, maxLon, maxLat
    """

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def from_bounds(cls, bounds: tuple[float, float, float, float]) -> "BBox":
        # shapely `.bounds` order: (minx, miny, maxx, maxy)
        min_lon, min_lat, max_lon, max_lat = bounds
        return cls(
            min_lon=float(min_lon),
            min_lat=float(min_lat),
            max_lon=float(max_lon),
            max_lat=float(max_lat),
        )

    def normalized(self) -> "BBox":
        min_lon = min(self.min_lon, self.max_lon)
        max_lon = max(self.min_lon, self.max_lon)
        min_lat = min(self.min_lat, self.max_lat)
        max_lat = max(self.min_lat, self.max_lat)
        return BBox(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)

    @property
    def width(self) -> float:
        b = self.normalized()
        return b.max_lon - b.min_lon

    @property
    def height(self) -> float:
        b = self.normalized()
        return b.max_lat - b.min_lat

    def is_empty(self) -> bool:
        return not (self.width > 0.0 and self.height > 0.0)

    def center(self) -> tuple[float, float]:
        b = self.normalized()
        return (b.min_lon + b.max_lon) / 2.0, (b.min_lat + b.max_lat) / 2.0

    def contains(self, other: "BBox") -> bool:
        a = self.normalized()
        b = other.normalized()
        return (
            a.min_lon <= b.min_lon
            and a.min_lat <= b.min_lat
            and a.max_lon >= b.max_lon
            and a.max_lat >= b.max_lat
        )

    def to_polygon(self) -> Polygon:
        b = self.normalized()
        return shapely_box(b.min_lon, b.min_lat, b.max_lon, b.max_lat)
