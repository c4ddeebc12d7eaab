from __future__ import annotations

import logging

import pytest
from shapely.geometry import Polygon

import engine.store as store_module
from engine.duckdb_common import load_spatial
from engine.errors import StoreNotInitializedError
from engine.sql import insert_from_parquet_sql
from engine.store import SpatialStore
from engine.types import StoreState
from geo.aoi import BBox
from locations.types import LocationCategory
from osm_elements import SCHOOL_LAT, SCHOOL_LON, mixed_elements, school_node, square_way
from settings.types import EngineSettings, StoreSettings

MITTE = BBox(min_lon=13.38, min_lat=52.50, max_lon=13.44, max_lat=52.54)


def _around_school(half: float = 0.005) -> BBox:
    return BBox(
        min_lon=SCHOOL_LON - half,
        min_lat=SCHOOL_LAT - half,
        max_lon=SCHOOL_LON + half,
        max_lat=SCHOOL_LAT + half,
    )


def _export(store: SpatialStore, path, select: str = "SELECT * FROM sensitive_locations") -> None:
    store._conn.execute(f"COPY ({select}) TO '{path}' (FORMAT PARQUET)")


def test_queries_before_ingestion_raise(store):
    with pytest.raises(StoreNotInitializedError):
        store.query_in_viewport(MITTE)
    with pytest.raises(StoreNotInitializedError):
        store.search_by_name("mitte")
    with pytest.raises(StoreNotInitializedError):
        store.get_statistics()


def test_ingest_requires_initialize(engine_settings):
    s = SpatialStore(engine_settings)
    assert s.state == StoreState.created
    with pytest.raises(StoreNotInitializedError):
        s.ingest([school_node()])


def test_ingest_and_statistics(store):
    n = store.ingest(mixed_elements())
    assert n == 6
    assert store.state == StoreState.ready
    assert not store.is_snapshot_loaded()

    stats = store.get_statistics()
    assert stats.total == 6
    assert stats.by_category == {
        "school": 1,
        "kindergarten": 1,
        "playground": 1,
        "community_centre": 1,
        "sports_centre": 1,
        "fitness_centre": 1,
        "other": 0,
    }
    assert stats.bounding_box is not None
    assert stats.bounding_box.min_lon == pytest.approx(13.39)
    assert stats.bounding_box.max_lon == pytest.approx(13.43)
    assert {"idx_sensitive_grid", "idx_sensitive_bbox", "idx_sensitive_type", "idx_sensitive_name"} <= set(
        stats.indexes
    )


def test_ingest_of_nothing_gives_empty_ready_store(store):
    assert store.ingest([]) == 0
    stats = store.get_statistics()
    assert stats.total == 0
    assert stats.bounding_box is None
    assert store.query_in_viewport(MITTE) == []


def test_ingest_replaces_previous_set(store):
    store.ingest(mixed_elements())
    assert store.ingest([school_node(7, name="Neue Schule")]) == 1
    locs = store.query_in_viewport(MITTE)
    assert [(loc.id, loc.external_id) for loc in locs] == [(1, 7)]


def test_malformed_rows_are_not_counted(store):
    bad = {"type": "node", "id": 5, "lat": "abc", "lon": 13.4, "tags": {"amenity": "school"}}
    assert store.ingest([bad, *mixed_elements()]) == 6
    assert store.get_statistics().total == 6


def test_non_object_elements_are_skipped(store):
    assert store.ingest(["garbage", None, 42, *mixed_elements()]) == 6
    assert [loc.external_id for loc in store.query_in_viewport(MITTE)] == [100, 101, 200, 201, 102, 103]


@pytest.mark.parametrize("small,large", [(1, 10_000), (3, 5)])
def test_ingest_result_does_not_depend_on_batch_size(small, large):
    results = []
    for batch_size in (small, large):
        with SpatialStore(EngineSettings(store=StoreSettings(threads=1, batch_size=batch_size))) as s:
            assert s.ingest(mixed_elements()) == 6
            results.append(
                [
                    (loc.id, loc.external_id, loc.category, loc.bbox, loc.grid_cell, loc.geometry.wkb)
                    for loc in s.query_in_viewport(MITTE)
                ]
            )
    assert results[0] == results[1]


def test_failed_batch_falls_back_to_row_inserts(store, monkeypatch):
    real = store_module._insert_rows

    def fail_batches(conn, rows):
        if len(rows) > 1:
            raise RuntimeError("batch rejected")
        if rows[0][1] == 101:
            raise RuntimeError("row rejected")
        real(conn, rows)

    monkeypatch.setattr(store_module, "_insert_rows", fail_batches)
    assert store.ingest(mixed_elements()) == 5
    ids = [loc.external_id for loc in store.query_in_viewport(MITTE)]
    assert 101 not in ids
    assert len(ids) == 5


def test_viewport_query_returns_locations_in_id_order(store):
    store.ingest(mixed_elements())
    locs = store.query_in_viewport(MITTE)
    assert [loc.id for loc in locs] == [1, 2, 3, 4, 5, 6]

    school = store.query_in_viewport(_around_school(0.002))
    assert len(school) == 1
    loc = school[0]
    assert loc.category == LocationCategory.school
    assert loc.name == "Grundschule am Alex"
    assert loc.attributes == {"amenity": "school", "name": "Grundschule am Alex"}
    assert (loc.geometry.x, loc.geometry.y) == (SCHOOL_LON, SCHOOL_LAT)
    assert loc.grid_cell == (1340, 5252)


def test_viewport_query_handles_swapped_and_remote_bboxes(store):
    store.ingest(mixed_elements())
    swapped = BBox(min_lon=13.44, min_lat=52.54, max_lon=13.38, max_lat=52.50)
    assert len(store.query_in_viewport(swapped)) == 6
    far = BBox(min_lon=2.30, min_lat=48.85, max_lon=2.35, max_lat=48.87)
    assert store.query_in_viewport(far) == []


def test_exact_stage_rejects_bbox_only_matches(store):
    diagonal = {
        "type": "way",
        "id": 500,
        "geometry": [{"lon": 13.402, "lat": 52.502}, {"lon": 13.422, "lat": 52.522}],
        "tags": {"leisure": "sports_centre", "name": "Laufstrecke"},
    }
    store.ingest([diagonal])
    off_line = BBox(min_lon=13.418, min_lat=52.503, max_lon=13.419, max_lat=52.504)
    on_line = BBox(min_lon=13.411, min_lat=52.510, max_lon=13.413, max_lat=52.512)
    assert store.query_in_viewport(off_line) == []
    assert [loc.external_id for loc in store.query_in_viewport(on_line)] == [500]
    assert [loc.external_id for loc in store.query_in_viewport(on_line, use_simplified=True)] == [500]


def test_bbox_inside_viewport_skips_exact_test(store, monkeypatch):
    edge = square_way(
        500, SCHOOL_LON + 0.002, SCHOOL_LAT, 0.0005, {"leisure": "playground", "name": "Randspielplatz"}
    )
    store.ingest([school_node(), edge])
    exact_calls = []

    def no_exact_hits(index, area, candidates):
        exact_calls.append(set(candidates))
        return []

    monkeypatch.setattr(store_module, "_exact_hits", no_exact_hits)
    locs = store.query_in_viewport(_around_school(0.002))
    # The school is kept from its bbox alone; the way straddling the edge needs the exact test.
    assert [loc.external_id for loc in locs] == [100]
    assert len(exact_calls) == 1
    assert len(exact_calls[0]) == 1


def test_large_viewport_logs_warning(store, caplog):
    store.ingest([school_node()])
    with caplog.at_level(logging.WARNING, logger="engine.store"):
        locs = store.query_in_viewport(BBox(min_lon=12.0, min_lat=51.0, max_lon=14.0, max_lat=53.0))
    assert len(locs) == 1
    assert any("Very large search area" in r.getMessage() for r in caplog.records)


def test_search_by_name_ranks_exact_then_prefix(store):
    store.ingest(
        [
            school_node(1, lon=13.40, name="Schule Mitte"),
            school_node(2, lon=13.41, name="Mitteschule"),
            school_node(3, lon=13.42, name="Mitte"),
            school_node(4, lon=13.43, name="Grundschule Nord"),
        ]
    )
    hits = store.search_by_name("  MITTE ")
    assert [h.name for h in hits] == ["Mitte", "Mitteschule", "Schule Mitte"]
    assert hits[0].external_id == 3
    assert hits[0].category == "school"
    assert (hits[0].lon, hits[0].lat) == pytest.approx((13.42, SCHOOL_LAT))

    assert [h.name for h in store.search_by_name("mitte", limit=1)] == ["Mitte"]
    assert store.search_by_name("") == []
    assert store.search_by_name("   ") == []
    assert store.search_by_name("Bahnhof") == []


def test_search_errors_return_empty(store, monkeypatch):
    store.ingest([school_node()])
    monkeypatch.setattr(store_module, "SEARCH_BY_NAME_SQL", "SELECT nope FROM missing_table")
    assert store.search_by_name("schule") == []


def test_repair_geometry_delegates_to_repair_chain(store):
    bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2), (0, 0)])
    fixed = store.repair_geometry(bowtie)
    assert fixed is not None and fixed.is_valid
    sq = Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])
    assert store.repair_geometry(sq) is sq


def test_snapshot_round_trip(store, engine_settings, tmp_path):
    store.ingest(mixed_elements())
    path = tmp_path / "sensitive_locations.parquet"
    _export(store, path)

    with SpatialStore(engine_settings) as fresh:
        result = fresh.ingest_from_snapshot(str(path))
        assert result.success
        assert result.count == 6
        assert result.reason is None
        assert fresh.is_snapshot_loaded()
        assert fresh.state == StoreState.ready

        a = store.query_in_viewport(MITTE)
        b = fresh.query_in_viewport(MITTE)
        assert [loc.id for loc in a] == [loc.id for loc in b]
        for x, y in zip(a, b):
            assert x.geometry.equals(y.geometry)
            assert x.category == y.category
            assert x.attributes == y.attributes
        assert fresh.get_statistics().by_category == store.get_statistics().by_category


def test_snapshot_with_geometry_columns(store, engine_settings, tmp_path):
    store.ingest(mixed_elements())
    load_spatial(store._conn)
    path = tmp_path / "geoparquet.parquet"
    _export(
        store,
        path,
        "SELECT * REPLACE (ST_GeomFromWKB(geometry) AS geometry, "
        "ST_GeomFromWKB(geometry_simple) AS geometry_simple) FROM sensitive_locations",
    )

    with SpatialStore(engine_settings) as fresh:
        result = fresh.ingest_from_snapshot(str(path))
        assert result.success, result.reason
        assert result.count == 6
        a = store.query_in_viewport(MITTE)
        b = fresh.query_in_viewport(MITTE)
        assert [loc.id for loc in a] == [loc.id for loc in b]
        for x, y in zip(a, b):
            assert x.geometry.equals(y.geometry)


def test_snapshot_insert_reads_geometry_as_wkb():
    sql = insert_from_parquet_sql({"geometry": "GEOMETRY('OGC:CRS84')", "geometry_simple": "BLOB"})
    assert "ST_AsWKB(geometry)" in sql
    assert "CAST(geometry_simple AS BLOB)" in sql
    assert "CAST(geometry AS BLOB)" not in sql


def test_missing_or_incompatible_snapshot_is_reported(store, tmp_path):
    result = store.ingest_from_snapshot(str(tmp_path / "missing.parquet"))
    assert not result.success
    assert "not found" in result.reason
    assert store.state == StoreState.initialized

    assert not store.ingest_from_snapshot("").success

    store.ingest([school_node()])
    partial = tmp_path / "partial.parquet"
    _export(store, partial, "SELECT id, name FROM sensitive_locations")
    result = store.ingest_from_snapshot(str(partial))
    assert not result.success
    assert "missing columns" in result.reason
    # Previous data survives.
    assert store.count() == 1
    assert not store.is_snapshot_loaded()


def test_failed_snapshot_load_rolls_back(store, tmp_path):
    store.ingest(mixed_elements())
    dup = tmp_path / "dup.parquet"
    _export(
        store,
        dup,
        "SELECT * FROM sensitive_locations UNION ALL SELECT * FROM sensitive_locations",
    )
    store.ingest([school_node()])

    result = store.ingest_from_snapshot(str(dup))
    assert not result.success
    assert store.count() == 1
    assert [loc.external_id for loc in store.query_in_viewport(MITTE)] == [100]


def test_discard_snapshot_allows_fresh_ingest(store, tmp_path):
    store.ingest(mixed_elements())
    path = tmp_path / "snap.parquet"
    _export(store, path)
    assert store.ingest_from_snapshot(str(path)).success

    store.discard_snapshot()
    assert not store.is_snapshot_loaded()
    assert store.state == StoreState.initialized
    with pytest.raises(StoreNotInitializedError):
        store.query_in_viewport(MITTE)

    assert store.ingest([school_node()]) == 1
    assert store.count() == 1


def test_explain_viewport_query(store):
    store.ingest(mixed_elements())
    plan = store.explain_viewport_query(MITTE)
    assert isinstance(plan, str)
    assert plan
    assert plan != "Analysis failed"


def test_file_backed_store_and_close(tmp_path):
    db = tmp_path / "data" / "zones.duckdb"
    s = SpatialStore(EngineSettings(store=StoreSettings(database=str(db), threads=1)))
    s.initialize()
    assert s.ingest([school_node()]) == 1
    s.close()
    assert db.exists()
    assert s.state == StoreState.closed
    with pytest.raises(StoreNotInitializedError):
        s.query_in_viewport(MITTE)
    with pytest.raises(StoreNotInitializedError):
        s.initialize()
