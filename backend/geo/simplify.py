from __future__ import annotations

from shapely.geometry import LineString, MultiPolygon, Point, Polygon
from shapely.geometry.base import BaseGeometry


def count_vertices(geom: BaseGeometry | None) -> int:
    """
    Total coordinate count across all rings/parts (closing points included).
    """
    if geom is None or geom.is_empty:
        return 0
    if isinstance(geom, Polygon):
        return len(geom.exterior.coords) + sum(len(r.coords) for r in geom.interiors)
    if isinstance(geom, (LineString, Point)):
        return len(geom.coords)
    parts = getattr(geom, "geoms", None)
    if parts is not None:
        return sum(count_vertices(g) for g in parts)
    return 0


def simplify_source_geometry(geom: BaseGeometry, *, tolerance_deg: float) -> BaseGeometry:
    """
    Ingestion-time simplification (plain Douglas-Peucker).

    Topology is not preserved, so the result may be invalid where the input is not.
    Collapsed output falls back to the input geometry.
    """
    if tolerance_deg <= 0 or isinstance(geom, Point):
        return geom
    simp = geom.simplify(tolerance_deg, preserve_topology=False)
    if simp.is_empty:
        return geom
    return simp


def simplify_zone(
    geom: Polygon | MultiPolygon | None, *, tolerance_deg: float
) -> Polygon | MultiPolygon | None:
    """
    Output simplification for zone polygons; tolerance 0 leaves them untouched.
    """
    if geom is None or tolerance_deg <= 0:
        return geom
    simp = geom.simplify(tolerance_deg, preserve_topology=True)
    if simp.is_empty:
        return geom
    return simp  # type: ignore[return-value]
