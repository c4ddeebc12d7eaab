from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Iterable

import duckdb
from shapely.geometry.base import BaseGeometry
from shapely.wkb import dumps as wkb_dumps

from engine.duckdb_common import close_quietly, configure, connect, load_spatial
from engine.errors import StoreNotInitializedError
from engine.geometry_index import (
    GeometryIndex,
    build_geometry_index,
    decode_wkb,
    empty_geometry_index,
)
from engine.snapshot import check_snapshot
from engine.sql import (
    COUNT_BY_TYPE_SQL,
    COUNT_SQL,
    CREATE_INDEXES_SQL,
    CREATE_TABLE_SQL,
    DROP_TABLE_SQL,
    EXTENT_SQL,
    GEOMETRY_COLUMNS,
    INDEX_NAMES_SQL,
    INSERT_SQL,
    SEARCH_BY_NAME_SQL,
    SELECT_GEOMETRIES_SQL,
    TABLE,
    VIEWPORT_CANDIDATES_SQL,
    insert_from_parquet_sql,
    is_geometry_type,
)
from engine.types import SearchHit, SnapshotLoadResult, StoreState, StoreStatistics
from geo.aoi import BBox
from geo.grid import grid_range_for_bbox
from geo.repair import RepairCapabilities, probe_capabilities, repair_geometry
from locations.osm import build_locations
from locations.types import LocationCategory, SensitiveLocation
from settings.types import EngineSettings

logger = logging.getLogger(__name__)


class SpatialStore:
    """
    DuckDB-backed store of sensitive locations.

    Rows carry precomputed acceleration columns (bbox, grid cell, simplified WKB);
    DuckDB ART indexes cover the grid/bbox/type/name columns and two STRtrees
    (full and simplified geometry) serve the exact intersection stage.

    Lifecycle: `initialize()` -> `ingest()` / `ingest_from_snapshot()` -> queries
    -> `close()`. Queries before a completed ingestion raise
    `StoreNotInitializedError`. One connection, guarded by a re-entrant lock.
    """

    def __init__(self, settings: EngineSettings | None = None):
        self.settings = settings or EngineSettings()
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.RLock()
        self._state = StoreState.created
        self._snapshot_loaded = False
        self._full_index: GeometryIndex = empty_geometry_index()
        self._simple_index: GeometryIndex = empty_geometry_index()
        self._capabilities: RepairCapabilities | None = None

    # -- lifecycle ---------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    def initialize(self) -> None:
        with self._lock:
            if self._state in {StoreState.initialized, StoreState.ready}:
                return
            if self._state == StoreState.closed:
                raise StoreNotInitializedError("Store has been closed")
            cfg = self.settings.store
            conn = connect(cfg.database, threads=cfg.threads)
            try:
                configure(conn, memory_limit=cfg.memory_limit)
                _create_schema(conn)
            except Exception:
                close_quietly(conn)
                raise
            self._capabilities = probe_capabilities()
            self._conn = conn
            self._state = StoreState.initialized
            logger.info(
                "Spatial store initialized (database=%s, threads=%d, make_valid=%s, reduce_precision=%s)",
                cfg.database,
                cfg.threads,
                self._capabilities.has_make_valid,
                self._capabilities.has_reduce_precision,
            )

    def close(self) -> None:
        with self._lock:
            close_quietly(self._conn)
            self._conn = None
            self._full_index = empty_geometry_index()
            self._simple_index = empty_geometry_index()
            self._snapshot_loaded = False
            self._state = StoreState.closed

    def __enter__(self) -> "SpatialStore":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None or self._state in {StoreState.created, StoreState.closed}:
            raise StoreNotInitializedError(
                f"Spatial store is not initialized (state={self._state.value})"
            )
        return self._conn

    def _require_ready(self) -> duckdb.DuckDBPyConnection:
        conn = self._require_conn()
        if self._state != StoreState.ready:
            raise StoreNotInitializedError(
                "Spatial store has no data loaded; call ingest() or ingest_from_snapshot() first"
            )
        return conn

    # -- ingestion ---------------------------------------------------------

    def ingest(self, elements: Iterable[dict[str, Any]]) -> int:
        """
        Replace the stored set with locations built from raw OSM elements.

        Returns the number of rows in the table afterwards.
        """
        started = time.perf_counter()
        elements = list(elements)
        proc = self.settings.processing
        report = build_locations(
            elements,
            simplify_tolerance=proc.ingest_simplify_tolerance,
            grid_cell_size=proc.grid_cell_degrees,
        )

        rows: list[tuple] = []
        malformed = report.malformed
        for loc in report.locations:
            try:
                rows.append(_location_row(loc))
            except Exception as e:
                malformed += 1
                logger.warning("Skipping location %s: %s", loc.external_id, e)

        batch_size = self.settings.store.batch_size
        with self._lock:
            conn = self._require_conn()
            conn.execute(DROP_TABLE_SQL)
            _create_schema(conn)
            self._snapshot_loaded = False

            failed_rows = 0
            n_batches = (len(rows) + batch_size - 1) // batch_size
            for i in range(n_batches):
                batch = rows[i * batch_size : (i + 1) * batch_size]
                try:
                    _insert_batch(conn, batch)
                    logger.debug("Batch %d/%d inserted (%d rows)", i + 1, n_batches, len(batch))
                    continue
                except Exception as e:
                    logger.warning(
                        "Batch %d/%d failed (%s); falling back to row inserts",
                        i + 1,
                        n_batches,
                        e,
                    )
                for row in batch:
                    try:
                        _insert_rows(conn, [row])
                    except Exception as e:
                        failed_rows += 1
                        logger.warning("Failed to insert location %s: %s", row[1], e)

            _analyze(conn)
            self._rebuild_geometry_indexes(conn)
            total = _count(conn)
            self._state = StoreState.ready

        logger.info(
            "Ingested %d locations from %d elements (%d malformed, %d insert failures) in %.1f ms",
            total,
            len(elements),
            malformed,
            failed_rows,
            (time.perf_counter() - started) * 1000.0,
        )
        return total

    def ingest_from_snapshot(self, locator: str) -> SnapshotLoadResult:
        """
        Bulk-load a prebuilt parquet snapshot (acceleration columns included).

        An unavailable or incompatible snapshot leaves the store untouched and
        returns `success=False`.
        """
        started = time.perf_counter()
        with self._lock:
            conn = self._require_conn()
            column_types, reason = check_snapshot(conn, locator)
            if reason is not None:
                logger.info("Snapshot not loaded: %s", reason)
                return SnapshotLoadResult(success=False, reason=reason)

            try:
                if any(is_geometry_type(column_types[c]) for c in GEOMETRY_COLUMNS):
                    load_spatial(conn)
                conn.begin()
                conn.execute(DROP_TABLE_SQL)
                conn.execute(CREATE_TABLE_SQL)
                conn.execute(insert_from_parquet_sql(column_types), [str(locator)])
                for stmt in CREATE_INDEXES_SQL:
                    conn.execute(stmt)
                conn.commit()
            except Exception as e:
                try:
                    conn.rollback()
                except Exception as rb:
                    logger.debug("Rollback after failed snapshot load: %s", rb)
                logger.warning("Failed to load snapshot %s: %s", locator, e)
                return SnapshotLoadResult(success=False, reason=f"snapshot load failed: {e}")

            _analyze(conn)
            self._rebuild_geometry_indexes(conn)
            count = _count(conn)
            self._snapshot_loaded = True
            self._state = StoreState.ready

        logger.info(
            "Loaded %d locations from snapshot %s in %.1f ms",
            count,
            locator,
            (time.perf_counter() - started) * 1000.0,
        )
        return SnapshotLoadResult(success=True, count=count)

    def is_snapshot_loaded(self) -> bool:
        return self._snapshot_loaded

    def discard_snapshot(self) -> None:
        """
        Drop loaded data and recreate an empty schema, ready for a fresh `ingest`.
        """
        with self._lock:
            conn = self._require_conn()
            logger.info("Discarding loaded data, preparing for fresh load")
            conn.execute(DROP_TABLE_SQL)
            _create_schema(conn)
            self._full_index = empty_geometry_index()
            self._simple_index = empty_geometry_index()
            self._snapshot_loaded = False
            self._state = StoreState.initialized

    def _rebuild_geometry_indexes(self, conn: duckdb.DuckDBPyConnection) -> None:
        full: list[tuple[int, BaseGeometry]] = []
        simple: list[tuple[int, BaseGeometry]] = []
        for location_id, geom_wkb, simple_wkb in conn.execute(SELECT_GEOMETRIES_SQL).fetchall():
            geom = decode_wkb(geom_wkb)
            if geom is None:
                logger.warning("Location %s has undecodable geometry; not indexed", location_id)
                continue
            full.append((int(location_id), geom))
            simple.append((int(location_id), decode_wkb(simple_wkb) or geom))
        self._full_index = build_geometry_index(full)
        self._simple_index = build_geometry_index(simple)

    # -- queries -----------------------------------------------------------

    def count(self) -> int:
        with self._lock:
            return _count(self._require_ready())

    def query_in_viewport(
        self, bbox: BBox, *, use_simplified: bool = False
    ) -> list[SensitiveLocation]:
        """
        Locations intersecting `bbox`: grid range -> bbox overlap -> exact test.

        `use_simplified` selects which geometry the exact stage tests.
        """
        started = time.perf_counter()
        b = bbox.normalized()
        params = self._candidate_params(b)

        with self._lock:
            conn = self._require_ready()
            rows = conn.execute(VIEWPORT_CANDIDATES_SQL, params).fetchall()
            prefilter_ms = (time.perf_counter() - started) * 1000.0
            if not rows:
                logger.debug("Viewport prefilter: 0 candidates (%.1f ms)", prefilter_ms)
                return []

            index = self._simple_index if use_simplified else self._full_index
            candidates = {int(r[0]) for r in rows}
            # A bbox inside the viewport means the geometry intersects it; no exact test.
            inside = {
                int(r[0])
                for r in rows
                if index.get(int(r[0])) is not None and b.contains(_row_bbox(r))
            }
            hits = inside | set(_exact_hits(index, b.to_polygon(), candidates - inside))
            out = [self._row_to_location(r) for r in rows if int(r[0]) in hits]

        logger.debug(
            "Viewport query: %d candidates, %d hits (prefilter %.1f ms, total %.1f ms)",
            len(candidates),
            len(out),
            prefilter_ms,
            (time.perf_counter() - started) * 1000.0,
        )
        return out

    def _candidate_params(self, b: BBox) -> list[Any]:
        proc = self.settings.processing
        grid = grid_range_for_bbox(b, cell_size=proc.grid_cell_degrees)
        if grid.cell_count > proc.max_grid_cells_warning:
            logger.warning(
                "Very large search area (%d grid cells); viewport bounds may be wrong",
                grid.cell_count,
            )
        return [
            grid.min_x,
            grid.max_x,
            grid.min_y,
            grid.max_y,
            b.max_lon,
            b.min_lon,
            b.max_lat,
            b.min_lat,
        ]

    def _row_to_location(self, row: tuple) -> SensitiveLocation:
        location_id, osm_id, name, type_, tags_json = row[:5]
        grid_x, grid_y = row[9], row[10]
        lid = int(location_id)
        geom = self._full_index.get(lid)
        simple = self._simple_index.get(lid) or geom
        return SensitiveLocation(
            id=lid,
            external_id=int(osm_id) if osm_id is not None else 0,
            name=str(name) if name is not None else None,
            category=_category(type_),
            geometry=geom,  # type: ignore[arg-type]
            simplified_geometry=simple,  # type: ignore[arg-type]
            bbox=_row_bbox(row),
            grid_cell=(int(grid_x), int(grid_y)),
            attributes=_tags(tags_json),
        )

    def repair_geometry(self, geom: BaseGeometry) -> BaseGeometry | None:
        """
        Valid input comes back unchanged; otherwise make_valid -> buffer(0) ->
        precision reduction, or None when all of them fail.
        """
        return repair_geometry(
            geom,
            precision_grid=self.settings.processing.reduce_precision_grid,
            capabilities=self._capabilities,
        )

    def search_by_name(self, text: str, limit: int = 20) -> list[SearchHit]:
        """
        Case-insensitive substring search ranked exact > prefix > other, then by name.
        """
        q = (text or "").strip().lower()
        with self._lock:
            conn = self._require_ready()
            if not q or limit <= 0:
                return []
            try:
                rows = conn.execute(SEARCH_BY_NAME_SQL, [q, q, q, int(limit)]).fetchall()
                hits = [self._row_to_hit(r) for r in rows]
            except Exception as e:
                logger.error("Search for %r failed: %s", q, e)
                return []
        logger.debug("Search %r: %d results", q, len(hits))
        return hits

    def _row_to_hit(self, row: tuple) -> SearchHit:
        location_id, osm_id, name, type_, tags_json, min_x, min_y, max_x, max_y = row
        geom = self._full_index.get(int(location_id))
        centroid = geom.centroid if geom is not None else None
        if centroid is not None and not centroid.is_empty:
            lon, lat = float(centroid.x), float(centroid.y)
        else:
            lon, lat = (float(min_x) + float(max_x)) / 2.0, (float(min_y) + float(max_y)) / 2.0
        return SearchHit(
            id=int(location_id),
            external_id=int(osm_id) if osm_id is not None else 0,
            name=str(name),
            category=_category(type_).value,
            lon=lon,
            lat=lat,
            tags=_tags(tags_json),
        )

    def get_statistics(self) -> StoreStatistics:
        with self._lock:
            conn = self._require_ready()
            total = _count(conn)
            by_category = {c.value: 0 for c in LocationCategory}
            for type_, n in conn.execute(COUNT_BY_TYPE_SQL).fetchall():
                by_category[str(type_)] = int(n)
            extent = conn.execute(EXTENT_SQL).fetchone()
            bounding_box = None
            if total and extent and all(v is not None for v in extent):
                bounding_box = BBox(
                    min_lon=float(extent[0]),
                    min_lat=float(extent[1]),
                    max_lon=float(extent[2]),
                    max_lat=float(extent[3]),
                )
            try:
                indexes = [str(r[0]) for r in conn.execute(INDEX_NAMES_SQL, [TABLE]).fetchall()]
            except Exception:
                logger.debug("Index statistics not available")
                indexes = []
        return StoreStatistics(
            total=total, by_category=by_category, bounding_box=bounding_box, indexes=indexes
        )

    def explain_viewport_query(self, bbox: BBox) -> str:
        """
        EXPLAIN ANALYZE output for the grid/bbox prefilter of `bbox` (debugging aid).
        """
        params = self._candidate_params(bbox.normalized())
        # Parameters are numbers generated above; EXPLAIN does not take bound params.
        sql = "EXPLAIN ANALYZE " + VIEWPORT_CANDIDATES_SQL.replace("?", "{}").format(
            *[repr(float(p)) if isinstance(p, float) else str(int(p)) for p in params]
        )
        with self._lock:
            conn = self._require_ready()
            try:
                rows = conn.execute(sql).fetchall()
            except Exception as e:
                logger.error("Query analysis failed: %s", e)
                return "Analysis failed"
        return "\n".join(str(r[-1]) for r in rows)


def _create_schema(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(CREATE_TABLE_SQL)
    for stmt in CREATE_INDEXES_SQL:
        conn.execute(stmt)


def _count(conn: duckdb.DuckDBPyConnection) -> int:
    row = conn.execute(COUNT_SQL).fetchone()
    return int(row[0] or 0) if row else 0


def _analyze(conn: duckdb.DuckDBPyConnection) -> None:
    try:
        conn.execute(f"ANALYZE {TABLE}")
    except Exception as e:
        logger.debug("ANALYZE skipped: %s", e)


def _insert_rows(conn: duckdb.DuckDBPyConnection, rows: list[tuple]) -> None:
    conn.executemany(INSERT_SQL, rows)


def _insert_batch(conn: duckdb.DuckDBPyConnection, rows: list[tuple]) -> None:
    # All-or-nothing, so a failed batch can be retried row by row.
    conn.begin()
    try:
        _insert_rows(conn, rows)
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def _location_row(loc: SensitiveLocation) -> tuple:
    b = loc.bbox
    return (
        loc.id,
        loc.external_id,
        loc.name,
        loc.category.value,
        json.dumps(loc.attributes or {}, ensure_ascii=False, default=str),
        wkb_dumps(loc.geometry),
        wkb_dumps(loc.simplified_geometry),
        b.min_lon,
        b.min_lat,
        b.max_lon,
        b.max_lat,
        loc.grid_cell[0],
        loc.grid_cell[1],
    )


def _exact_hits(index: GeometryIndex, area: BaseGeometry, candidates: set[int]) -> list[int]:
    try:
        return index.intersecting(area, among=candidates)
    except Exception as e:
        # GEOS can refuse predicates on some invalid inputs; test one by one.
        logger.debug("Tree intersects query failed (%s); testing candidates individually", e)
    out: list[int] = []
    for cid in sorted(candidates):
        geom = index.get(cid)
        if geom is None:
            continue
        try:
            hit = bool(geom.intersects(area))
        except Exception:
            # Already matched the bbox stage; repair happens downstream.
            hit = True
        if hit:
            out.append(cid)
    return out


def _row_bbox(row: tuple) -> BBox:
    # Candidate rows carry bbox_minx, bbox_miny, bbox_maxx, bbox_maxy at positions 5..8.
    return BBox(
        min_lon=float(row[5]), min_lat=float(row[6]), max_lon=float(row[7]), max_lat=float(row[8])
    )


def _category(value: Any) -> LocationCategory:
    try:
        return LocationCategory(str(value))
    except ValueError:
        return LocationCategory.other


def _tags(tags_json: Any) -> dict[str, Any]:
    if not tags_json:
        return {}
    try:
        data = json.loads(tags_json)
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}
