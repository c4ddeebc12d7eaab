from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree
from shapely.wkb import loads as wkb_loads

from geo.ops import to_int_list


@dataclass
class GeometryIndex:
    """
    In-memory geometry column plus an STRtree over it.

    Positions in `geoms` line up with `ids`; the tree returns positions.
    """

    ids: list[int]
    geoms: list[BaseGeometry]
    tree: STRtree
    _by_id: dict[int, BaseGeometry] = field(default_factory=dict, repr=False)

    def get(self, location_id: int) -> BaseGeometry | None:
        return self._by_id.get(location_id)

    def intersecting(
        self, area: BaseGeometry, *, among: set[int] | None = None
    ) -> list[int]:
        """
        Ids whose geometry intersects `area`, optionally limited to `among`.
        """
        if not self.ids:
            return []
        hits = to_int_list(self.tree.query(area, predicate="intersects"))
        out = [self.ids[i] for i in hits]
        if among is not None:
            out = [i for i in out if i in among]
        return sorted(out)


def build_geometry_index(rows: Iterable[tuple[int, BaseGeometry]]) -> GeometryIndex:
    ids: list[int] = []
    geoms: list[BaseGeometry] = []
    for location_id, geom in rows:
        ids.append(int(location_id))
        geoms.append(geom)
    return GeometryIndex(
        ids=ids,
        geoms=geoms,
        tree=STRtree(geoms),
        _by_id=dict(zip(ids, geoms)),
    )


def empty_geometry_index() -> GeometryIndex:
    return build_geometry_index([])


def decode_wkb(blob) -> BaseGeometry | None:
    try:
        return wkb_loads(bytes(blob)) if blob is not None else None
    except Exception:
        return None
