from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import shapely
from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepairCapabilities:
    """
    Which optional repair functions the installed shapely/GEOS build provides.
    """

    has_make_valid: bool
    has_reduce_precision: bool


@lru_cache(maxsize=1)
def probe_capabilities() -> RepairCapabilities:
    probe = shapely.Point(0.0, 0.0)

    has_make_valid = False
    make_valid = getattr(shapely, "make_valid", None)
    if make_valid is not None:
        try:
            make_valid(probe)
            has_make_valid = True
        except Exception:
            logger.warning("make_valid is not available in this GEOS build")

    has_reduce_precision = False
    set_precision = getattr(shapely, "set_precision", None)
    if set_precision is not None:
        try:
            set_precision(probe, 0.001)
            has_reduce_precision = True
        except Exception:
            logger.warning("set_precision is not available in this GEOS build")

    return RepairCapabilities(
        has_make_valid=has_make_valid, has_reduce_precision=has_reduce_precision
    )


def _usable(geom: BaseGeometry | None) -> bool:
    return geom is not None and not geom.is_empty and bool(geom.is_valid)


def repair_geometry(
    geom: BaseGeometry,
    *,
    precision_grid: float = 0.000001,
    capabilities: RepairCapabilities | None = None,
) -> BaseGeometry | None:
    """
    Return `geom` when valid, else the first successful repair, else None.

    Order: make_valid, zero-distance buffer, precision reduction.
    """
    if geom.is_valid:
        return geom

    caps = capabilities or probe_capabilities()
    logger.warning("Invalid %s detected, attempting repair", geom.geom_type)

    if caps.has_make_valid:
        try:
            repaired = shapely.make_valid(geom)
            if _usable(repaired):
                logger.debug("Geometry repaired with make_valid")
                return repaired
        except Exception as e:
            logger.warning("make_valid failed: %s", e)

    try:
        repaired = geom.buffer(0)
        if _usable(repaired):
            logger.debug("Geometry repaired with buffer(0)")
            return repaired
    except Exception as e:
        logger.warning("buffer(0) failed: %s", e)

    if caps.has_reduce_precision:
        try:
            repaired = shapely.set_precision(geom, precision_grid)
            if _usable(repaired):
                logger.debug("Geometry repaired with set_precision")
                return repaired
        except Exception as e:
            logger.warning("set_precision failed: %s", e)

    logger.error("All geometry repair attempts failed")
    return None
