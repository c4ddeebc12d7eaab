from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from shapely.geometry import LineString, Point, Polygon
from shapely.geometry.base import BaseGeometry

from geo.aoi import BBox
from geo.grid import GRID_CELL_DEGREES, grid_cell_for_geometry
from geo.simplify import simplify_source_geometry
from locations.types import SensitiveLocation, classify_tags

logger = logging.getLogger(__name__)

Coord = tuple[float, float]


@dataclass
class ConversionReport:
    """
    Outcome of converting raw elements: converted locations plus skip counters.
    """

    locations: list[SensitiveLocation] = field(default_factory=list)
    malformed: int = 0
    skipped: int = 0


def index_nodes(elements: Iterable[dict[str, Any]]) -> dict[int, Coord]:
    """
    node id -> (lon, lat) for every node element, tagged or not.
    """
    nodes: dict[int, Coord] = {}
    for el in elements:
        if not isinstance(el, dict) or el.get("type") != "node":
            continue
        try:
            nodes[int(el["id"])] = (float(el["lon"]), float(el["lat"]))
        except Exception:
            # Broken vertex; ways referencing it just lose that point.
            continue
    return nodes


def way_coords(el: dict[str, Any], nodes: dict[int, Coord]) -> list[Coord]:
    """
    Resolve a way's vertices.

    Overpass `out geom;` ships inline `geometry: [{lat, lon}, ...]`; otherwise
    `nodes` holds vertex ids resolved against the node index (missing ids dropped).
    """
    inline = el.get("geometry")
    if inline:
        coords: list[Coord] = []
        for p in inline:
            lat = (p or {}).get("lat")
            lon = (p or {}).get("lon")
            if lat is None or lon is None:
                continue
            coords.append((float(lon), float(lat)))
        return coords

    out: list[Coord] = []
    for ref in el.get("nodes") or []:
        c = nodes.get(int(ref))
        if c is not None:
            out.append(c)
    return out


def way_geometry(coords: list[Coord]) -> BaseGeometry | None:
    if len(coords) >= 4 and coords[0] == coords[-1]:
        return Polygon(coords)
    if len(coords) >= 2:
        return LineString(coords)
    return None


def element_geometry(el: dict[str, Any], nodes: dict[int, Coord]) -> BaseGeometry | None:
    """
    Geometry for a tagged node/way; None when the element is not a location.

    Raises on malformed coordinates.
    """
    etype = el.get("type")
    if etype == "node":
        return Point(float(el["lon"]), float(el["lat"]))
    if etype == "way":
        return way_geometry(way_coords(el, nodes))
    return None


def build_locations(
    elements: list[dict[str, Any]],
    *,
    simplify_tolerance: float = 0.0001,
    grid_cell_size: float = GRID_CELL_DEGREES,
    first_id: int = 1,
) -> ConversionReport:
    """
    Convert Overpass-style elements into `SensitiveLocation`s.

    Only tagged nodes/ways become locations; untagged nodes are vertex sources.
    A malformed element is logged and skipped without aborting the rest.
    """
    nodes = index_nodes(elements)
    report = ConversionReport()
    next_id = first_id

    for el in elements:
        if not isinstance(el, dict):
            report.malformed += 1
            logger.warning("Skipping malformed element (not an object): %.80r", el)
            continue
        tags = el.get("tags") or {}
        if not tags or el.get("type") not in {"node", "way"}:
            continue
        try:
            geom = element_geometry(el, nodes)
            if geom is None:
                report.skipped += 1
                continue
            if geom.is_empty:
                raise ValueError("empty geometry")
            location = SensitiveLocation(
                id=next_id,
                external_id=int(el["id"]),
                name=tags.get("name") or None,
                category=classify_tags(tags),
                geometry=geom,
                simplified_geometry=simplify_source_geometry(
                    geom, tolerance_deg=simplify_tolerance
                ),
                bbox=BBox.from_bounds(geom.bounds),
                grid_cell=grid_cell_for_geometry(geom, cell_size=grid_cell_size),
                attributes=dict(tags),
            )
        except Exception as e:
            report.malformed += 1
            logger.warning(
                "Skipping malformed %s %s: %s", el.get("type"), el.get("id"), e
            )
            continue
        report.locations.append(location)
        next_id += 1

    logger.debug(
        "Converted %d elements (%d nodes indexed): %d locations, %d malformed, %d skipped",
        len(elements),
        len(nodes),
        len(report.locations),
        report.malformed,
        report.skipped,
    )
    return report
