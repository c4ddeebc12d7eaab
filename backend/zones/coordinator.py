from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from geo.aoi import BBox
from zones.calculator import ZoneCalculator
from zones.cancellation import CancellationToken
from zones.types import ProcessingMode, ProgressSink, ZoneCancelled, ZoneOutcome, ZoneStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ZoneRequest:
    buffer_distance_m: float
    viewport: BBox
    mode: ProcessingMode = ProcessingMode.balanced


class ZoneRequestCoordinator:
    """
    Latest-request-wins scheduling for interactive callers (map pans, slider drags).

    At most one calculation runs at a time. Submitting a new request cancels the
    one in flight and waits for it to stop before starting; a superseded request
    always resolves to `ZoneCancelled`.
    """

    def __init__(self, calculator: ZoneCalculator):
        self.calculator = calculator
        self._token: CancellationToken | None = None
        self._task: asyncio.Future | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()

    async def submit(
        self, request: ZoneRequest, progress: ProgressSink | None = None
    ) -> ZoneOutcome:
        token = CancellationToken()
        previous = self._task
        self.cancel()
        self._token = token

        if previous is not None and not previous.done():
            # Its own submitter observes the outcome; we only wait for the worker to stop.
            await asyncio.wait([previous])

        if token.cancelled:
            logger.debug("Zone request superseded before start")
            return ZoneCancelled(stats=ZoneStats(0, 0.0, ProcessingMode(request.mode)))

        task = asyncio.ensure_future(
            asyncio.to_thread(
                self.calculator.calculate,
                request.buffer_distance_m,
                request.viewport,
                request.mode,
                cancel_token=token,
                progress=progress,
            )
        )
        self._task = task
        try:
            outcome = await asyncio.shield(task)
        except asyncio.CancelledError:
            token.cancel()
            raise
        finally:
            if self._token is token:
                self._token = None
            if self._task is task and task.done():
                self._task = None

        if token.cancelled and not isinstance(outcome, ZoneCancelled):
            logger.debug("Discarding result of superseded zone request")
            return ZoneCancelled(stats=outcome.stats)
        return outcome
