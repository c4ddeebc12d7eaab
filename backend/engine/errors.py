from __future__ import annotations


class SpatialEngineError(RuntimeError):
    """Base class for unexpected, caller-visible engine failures."""


class StoreNotInitializedError(SpatialEngineError):
    """
    A query was issued before `initialize()` and a completed ingestion, or after `close()`.
    """


class InvalidViewportError(SpatialEngineError, ValueError):
    """The viewport has zero width or height."""
