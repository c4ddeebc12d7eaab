from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shapely.geometry.base import BaseGeometry

from geo.aoi import BBox


class LocationCategory(str, Enum):
    school = "school"
    kindergarten = "kindergarten"
    playground = "playground"
    community_centre = "community_centre"
    sports_centre = "sports_centre"
    fitness_centre = "fitness_centre"
    other = "other"


# First matching (tag, value) wins; order matters.
CATEGORY_RULES: tuple[tuple[str, str, LocationCategory], ...] = (
    ("amenity", "school", LocationCategory.school),
    ("amenity", "kindergarten", LocationCategory.kindergarten),
    ("leisure", "playground", LocationCategory.playground),
    ("amenity", "community_centre", LocationCategory.community_centre),
    ("leisure", "sports_centre", LocationCategory.sports_centre),
    ("leisure", "fitness_centre", LocationCategory.fitness_centre),
)


def classify_tags(tags: dict[str, Any] | None) -> LocationCategory:
    if not tags:
        return LocationCategory.other
    for key, value, category in CATEGORY_RULES:
        if tags.get(key) == value:
            return category
    return LocationCategory.other


@dataclass(frozen=True)
class SensitiveLocation:
    """
    One OSM node or way relevant to the restriction rule.

    `geometry` is lon/lat (EPSG:4326). `bbox`, `grid_cell` and
    `simplified_geometry` are derived once at ingestion (or read from a snapshot).
    """

    id: int
    external_id: int
    name: str | None
    category: LocationCategory
    geometry: BaseGeometry
    simplified_geometry: BaseGeometry
    bbox: BBox
    grid_cell: tuple[int, int]
    attributes: dict[str, Any] = field(default_factory=dict)
