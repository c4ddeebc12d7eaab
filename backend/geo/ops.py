from __future__ import annotations

from typing import Any, Iterable

from shapely.geometry import GeometryCollection, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

# Latitude-derived constant applied to both axes. Good enough inside one city
# (calibrated for Berlin); not a geodesic conversion.
METERS_PER_DEGREE = 111_000.0


def meters_to_degrees(meters: float, *, meters_per_degree: float = METERS_PER_DEGREE) -> float:
    return float(meters) / float(meters_per_degree)


def buffer_geometry(geom: BaseGeometry, distance_deg: float, *, quad_segs: int = 8) -> BaseGeometry:
    return geom.buffer(distance_deg, quad_segs=quad_segs)


def union_polygons(polys: Iterable[BaseGeometry]) -> Polygon | MultiPolygon | None:
    """
    Union polygonal geometries; None when there is nothing to union.

    May raise shapely's GEOSException on inputs GEOS cannot reconcile.
    """
    items = [p for p in polys if p is not None and not p.is_empty]
    if not items:
        return None
    return polygonal_or_none(unary_union(items))


def polygonal_or_none(geom: BaseGeometry | None) -> Polygon | MultiPolygon | None:
    """
    Keep only the polygonal part of `geom`.

    Overlay ops can emit GeometryCollections with stray lines/points.
    """
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    if isinstance(geom, GeometryCollection):
        polys: list[Polygon] = []
        for g in geom.geoms:
            if isinstance(g, Polygon) and not g.is_empty:
                polys.append(g)
            elif isinstance(g, MultiPolygon):
                polys.extend(p for p in g.geoms if not p.is_empty)
        if not polys:
            return None
        return polys[0] if len(polys) == 1 else MultiPolygon(polys)
    return None


def to_int_list(idxs: Any) -> list[int]:
    # Shapely STRtree returns numpy.ndarray of indices.
    if idxs is None:
        return []
    try:
        return [int(i) for i in idxs]
    except Exception:
        try:
            return [int(i) for i in list(idxs)]
        except Exception:
            return []
