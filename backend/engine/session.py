from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from engine.store import SpatialStore
from geo.aoi import BBox
from settings.loader import load_settings
from settings.types import EngineSettings
from zones.calculator import ZoneCalculator
from zones.cancellation import CancellationToken
from zones.coordinator import ZoneRequestCoordinator
from zones.types import ProcessingMode, ProgressSink, ZoneOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadReport:
    source: str  # "snapshot" | "elements"
    count: int
    # Why the snapshot was not used, when a locator was given.
    snapshot_reason: str | None = None


class SpatialEngine:
    """
    One session: a store, a calculator over it, and the load sequence
    (snapshot first, raw elements as fallback).
    """

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or load_settings()
        self.store = SpatialStore(self.settings)
        self.calculator = ZoneCalculator(self.store, self.settings.processing)

    def initialize(self) -> None:
        self.store.initialize()

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "SpatialEngine":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def load(
        self,
        snapshot_locator: str | None,
        fetch_elements: Callable[[], Iterable[dict[str, Any]]],
    ) -> LoadReport:
        reason: str | None = None
        if snapshot_locator:
            result = self.store.ingest_from_snapshot(snapshot_locator)
            if result.success:
                return LoadReport(source="snapshot", count=result.count)
            reason = result.reason
            logger.info("Snapshot unavailable (%s); loading from elements", reason)

        count = self.store.ingest(fetch_elements())
        return LoadReport(source="elements", count=count, snapshot_reason=reason)

    def calculate_zones(
        self,
        buffer_distance_m: float,
        viewport: BBox,
        mode: ProcessingMode | str = ProcessingMode.balanced,
        *,
        cancel_token: CancellationToken | None = None,
        progress: ProgressSink | None = None,
    ) -> ZoneOutcome:
        return self.calculator.calculate(
            buffer_distance_m, viewport, mode, cancel_token=cancel_token, progress=progress
        )

    def coordinator(self) -> ZoneRequestCoordinator:
        return ZoneRequestCoordinator(self.calculator)
