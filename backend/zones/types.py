from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar

from shapely.geometry import MultiPolygon, Polygon, mapping

ZoneGeometry = Polygon | MultiPolygon

# (percent, message); called from the thread running the calculation.
ProgressSink = Callable[[int, str], None]


class ProcessingMode(str, Enum):
    fast = "fast"
    balanced = "balanced"
    accurate = "accurate"

    @property
    def uses_simplified(self) -> bool:
        return self != ProcessingMode.accurate


@dataclass(frozen=True)
class ZoneStats:
    location_count: int
    processing_time_ms: float
    mode: ProcessingMode
    # Locations dropped because their geometry could not be repaired.
    excluded_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "locationCount": self.location_count,
            "processingTimeMs": round(self.processing_time_ms, 3),
            "mode": self.mode.value,
            "excludedCount": self.excluded_count,
        }


def _feature_collection(geom: ZoneGeometry | None, zone_type: str) -> dict[str, Any] | None:
    if geom is None or geom.is_empty:
        return None
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": mapping(geom),
                "properties": {"type": zone_type},
            }
        ],
    }


@dataclass(frozen=True)
class ZoneSuccess:
    restricted_area: ZoneGeometry | None
    eligible_area: ZoneGeometry | None
    stats: ZoneStats

    kind: ClassVar[str] = "success"
    fallback_used: ClassVar[bool] = False

    @property
    def location_count(self) -> int:
        return self.stats.location_count

    @property
    def processing_time_ms(self) -> float:
        return self.stats.processing_time_ms

    def to_geojson(self) -> dict[str, Any]:
        stats = self.stats.to_dict()
        stats["fallbackUsed"] = self.fallback_used
        return {
            "restrictedZones": _feature_collection(self.restricted_area, "restricted"),
            "eligibleZones": _feature_collection(self.eligible_area, "eligible"),
            "stats": stats,
        }


@dataclass(frozen=True)
class ZoneFallbackNeeded:
    """
    Geometry processing hit a topology error; the caller should use another
    backend. Carries no geometry.
    """

    stats: ZoneStats
    reason: str

    kind: ClassVar[str] = "fallback_needed"
    fallback_used: ClassVar[bool] = True
    restricted_area: ClassVar[None] = None
    eligible_area: ClassVar[None] = None

    @property
    def location_count(self) -> int:
        return self.stats.location_count

    @property
    def processing_time_ms(self) -> float:
        return self.stats.processing_time_ms


@dataclass(frozen=True)
class ZoneCancelled:
    stats: ZoneStats

    kind: ClassVar[str] = "cancelled"
    fallback_used: ClassVar[bool] = False
    restricted_area: ClassVar[None] = None
    eligible_area: ClassVar[None] = None

    @property
    def location_count(self) -> int:
        return self.stats.location_count

    @property
    def processing_time_ms(self) -> float:
        return self.stats.processing_time_ms


ZoneOutcome = ZoneSuccess | ZoneFallbackNeeded | ZoneCancelled
