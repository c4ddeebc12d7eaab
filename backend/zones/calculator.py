from __future__ import annotations

import logging
import time
from typing import Sequence

from shapely.errors import GEOSException, TopologicalError
from shapely.geometry.base import BaseGeometry

from engine.errors import InvalidViewportError
from engine.store import SpatialStore
from geo.aoi import BBox
from geo.ops import buffer_geometry, meters_to_degrees, polygonal_or_none, union_polygons
from geo.simplify import simplify_zone
from locations.types import SensitiveLocation
from settings.types import ProcessingSettings
from zones.cancellation import CalculationCancelled, CancellationToken
from zones.types import (
    ProcessingMode,
    ProgressSink,
    ZoneCancelled,
    ZoneFallbackNeeded,
    ZoneGeometry,
    ZoneOutcome,
    ZoneStats,
    ZoneSuccess,
)

logger = logging.getLogger(__name__)


def _noop_progress(percent: int, message: str) -> None:
    return None


class ZoneCalculator:
    """
    Restricted area = union of buffered locations in the viewport;
    eligible area = viewport minus restricted area.

    All geometry work runs in lon/lat degrees with a flat metres-per-degree
    conversion.
    """

    def __init__(self, store: SpatialStore, settings: ProcessingSettings | None = None):
        self.store = store
        self.settings = settings or store.settings.processing

    def tolerance_for(self, mode: ProcessingMode) -> float:
        tol = self.settings.output_tolerance
        return {
            ProcessingMode.fast: tol.fast,
            ProcessingMode.balanced: tol.balanced,
            ProcessingMode.accurate: tol.accurate,
        }[mode]

    def calculate(
        self,
        buffer_distance_m: float,
        viewport: BBox,
        mode: ProcessingMode | str = ProcessingMode.balanced,
        *,
        cancel_token: CancellationToken | None = None,
        progress: ProgressSink | None = None,
    ) -> ZoneOutcome:
        started = time.perf_counter()
        mode = ProcessingMode(mode)
        if viewport is None or viewport.is_empty():
            raise InvalidViewportError(f"Viewport must have non-zero width and height: {viewport}")
        vp = viewport.normalized()
        token = cancel_token or CancellationToken()
        report = progress or _noop_progress

        buffered_count = 0
        excluded = 0
        try:
            token.raise_if_cancelled()
            report(10, "Querying locations in viewport")
            locations = self.store.query_in_viewport(vp, use_simplified=mode.uses_simplified)
            token.raise_if_cancelled()
            report(30, f"Found {len(locations)} locations")

            buffer_deg = meters_to_degrees(
                buffer_distance_m, meters_per_degree=self.settings.meters_per_degree
            )
            buffers, excluded = self._buffer_locations(locations, buffer_deg, mode, token)
            buffered_count = len(buffers)
            restricted = union_polygons(buffers)
            token.raise_if_cancelled()
            report(70, "Union complete")

            eligible = _eligible_area(vp, restricted)
            token.raise_if_cancelled()
            report(90, "Difference complete")

            tolerance = self.tolerance_for(mode)
            restricted = polygonal_or_none(simplify_zone(restricted, tolerance_deg=tolerance))
            eligible = polygonal_or_none(simplify_zone(eligible, tolerance_deg=tolerance))
        except CalculationCancelled:
            logger.debug("Zone calculation cancelled (mode=%s)", mode.value)
            return ZoneCancelled(stats=_stats(buffered_count, started, mode, excluded))
        except (GEOSException, TopologicalError) as e:
            logger.warning("Topology error in zone calculation, fallback needed: %s", e)
            return ZoneFallbackNeeded(stats=_stats(0, started, mode), reason=str(e))

        stats = _stats(buffered_count, started, mode, excluded)
        report(100, "Complete")
        logger.debug(
            "Zones calculated: %d locations, %d excluded, mode=%s, %.1f ms",
            stats.location_count,
            stats.excluded_count,
            mode.value,
            stats.processing_time_ms,
        )
        return ZoneSuccess(restricted_area=restricted, eligible_area=eligible, stats=stats)

    def _buffer_locations(
        self,
        locations: Sequence[SensitiveLocation],
        buffer_deg: float,
        mode: ProcessingMode,
        token: CancellationToken,
    ) -> tuple[list[BaseGeometry], int]:
        buffers: list[BaseGeometry] = []
        excluded = 0
        for loc in locations:
            token.raise_if_cancelled()
            geom = loc.simplified_geometry if mode.uses_simplified else loc.geometry
            if geom is None or geom.is_empty:
                excluded += 1
                continue
            if not geom.is_valid:
                geom = self.store.repair_geometry(geom)
                if geom is None:
                    logger.warning("Excluding location %d (%s): unrepairable geometry", loc.id, loc.name)
                    excluded += 1
                    continue
            buffers.append(
                buffer_geometry(geom, buffer_deg, quad_segs=self.settings.buffer_quad_segs)
            )
        return buffers, excluded


def _eligible_area(viewport: BBox, restricted: ZoneGeometry | None) -> ZoneGeometry | None:
    box = viewport.to_polygon()
    if restricted is None:
        return box
    return polygonal_or_none(box.difference(restricted))


def _stats(count: int, started: float, mode: ProcessingMode, excluded: int = 0) -> ZoneStats:
    return ZoneStats(
        location_count=count,
        processing_time_ms=(time.perf_counter() - started) * 1000.0,
        mode=mode,
        excluded_count=excluded,
    )
