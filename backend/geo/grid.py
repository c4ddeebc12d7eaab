from __future__ import annotations

import math
from dataclasses import dataclass

from shapely.geometry.base import BaseGeometry

from geo.aoi import BBox

# 0.01 degree cells (~1.1 km in latitude).
GRID_CELL_DEGREES = 0.01


@dataclass(frozen=True)
class GridRange:
    """
    Inclusive range of coarse grid cells covering a viewport.
    """

    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def cell_count(self) -> int:
        return (self.max_x - self.min_x + 1) * (self.max_y - self.min_y + 1)


def grid_cell_for_point(
    lon: float, lat: float, *, cell_size: float = GRID_CELL_DEGREES
) -> tuple[int, int]:
    return int(math.floor(lon / cell_size)), int(math.floor(lat / cell_size))


def grid_cell_for_geometry(
    geom: BaseGeometry, *, cell_size: float = GRID_CELL_DEGREES
) -> tuple[int, int]:
    """
    Grid cell of the geometry's centroid.

    Degenerate geometries (e.g. zero-area self-intersecting rings) can produce an
    empty centroid; the bbox centre stands in for it then.
    """
    c = geom.centroid
    if c.is_empty:
        lon, lat = BBox.from_bounds(geom.bounds).center()
    else:
        lon, lat = float(c.x), float(c.y)
    return grid_cell_for_point(lon, lat, cell_size=cell_size)


def grid_range_for_bbox(
    aoi: BBox, *, cell_size: float = GRID_CELL_DEGREES
) -> GridRange:
    # Lower edges floor, upper edges ceil: the range errs on the wide side.
    b = aoi.normalized()
    return GridRange(
        min_x=int(math.floor(b.min_lon / cell_size)),
        max_x=int(math.ceil(b.max_lon / cell_size)),
        min_y=int(math.floor(b.min_lat / cell_size)),
        max_y=int(math.ceil(b.max_lat / cell_size)),
    )
