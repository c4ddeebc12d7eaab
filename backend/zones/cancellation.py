from __future__ import annotations

import threading


class CalculationCancelled(Exception):
    """Raised at a calculation checkpoint once the token is cancelled."""


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a worker thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CalculationCancelled()
