from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from geo.aoi import BBox


class StoreState(str, Enum):
    created = "created"
    initialized = "initialized"  # schema exists, no data loaded yet
    ready = "ready"
    closed = "closed"


@dataclass(frozen=True)
class SnapshotLoadResult:
    """
    What `ingest_from_snapshot` returns; an unavailable source is not an exception.
    """

    success: bool
    count: int = 0
    reason: str | None = None


@dataclass(frozen=True)
class SearchHit:
    id: int
    external_id: int
    name: str
    category: str
    lon: float
    lat: float
    tags: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoreStatistics:
    total: int
    by_category: dict[str, int]
    # None when the store is empty.
    bounding_box: BBox | None
    indexes: list[str] = field(default_factory=list)
