from __future__ import annotations

TABLE = "sensitive_locations"

# Column order shared by inserts, snapshot loads and row decoding.
COLUMNS = (
    "id",
    "osm_id",
    "name",
    "type",
    "tags",
    "geometry",
    "geometry_simple",
    "bbox_minx",
    "bbox_miny",
    "bbox_maxx",
    "bbox_maxy",
    "grid_x",
    "grid_y",
)

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
  id INTEGER PRIMARY KEY,
  osm_id BIGINT,
  name VARCHAR,
  type VARCHAR,
  tags VARCHAR,
  geometry BLOB,
  geometry_simple BLOB,
  bbox_minx DOUBLE,
  bbox_miny DOUBLE,
  bbox_maxx DOUBLE,
  bbox_maxy DOUBLE,
  grid_x INTEGER,
  grid_y INTEGER
);
"""

CREATE_INDEXES_SQL = (
    f"CREATE INDEX IF NOT EXISTS idx_sensitive_grid ON {TABLE} (grid_x, grid_y);",
    f"CREATE INDEX IF NOT EXISTS idx_sensitive_bbox ON {TABLE} (bbox_minx, bbox_miny, bbox_maxx, bbox_maxy);",
    f"CREATE INDEX IF NOT EXISTS idx_sensitive_type ON {TABLE} (type);",
    f"CREATE INDEX IF NOT EXISTS idx_sensitive_name ON {TABLE} (name);",
)

DROP_TABLE_SQL = f"DROP TABLE IF EXISTS {TABLE};"

INSERT_SQL = f"""
INSERT INTO {TABLE} ({", ".join(COLUMNS)})
VALUES ({", ".join("?" for _ in COLUMNS)})
"""

GEOMETRY_COLUMNS = ("geometry", "geometry_simple")


def is_geometry_type(column_type: str) -> bool:
    return column_type.strip().upper().startswith("GEOMETRY")


def _wkb_expr(column: str, column_type: str) -> str:
    # GeoParquet geometry surfaces as GEOMETRY(...), which does not cast to BLOB.
    if is_geometry_type(column_type):
        return f"ST_AsWKB({column})"
    return f"CAST({column} AS BLOB)"


def insert_from_parquet_sql(column_types: dict[str, str]) -> str:
    """
    Snapshot bulk insert; `column_types` is the parquet schema (name -> DuckDB type).
    """
    geom = {c: _wkb_expr(c, column_types.get(c, "BLOB")) for c in GEOMETRY_COLUMNS}
    return f"""
INSERT INTO {TABLE} ({", ".join(COLUMNS)})
SELECT
  CAST(id AS INTEGER),
  CAST(osm_id AS BIGINT),
  CAST(name AS VARCHAR),
  CAST(type AS VARCHAR),
  CAST(tags AS VARCHAR),
  {geom["geometry"]},
  {geom["geometry_simple"]},
  CAST(bbox_minx AS DOUBLE),
  CAST(bbox_miny AS DOUBLE),
  CAST(bbox_maxx AS DOUBLE),
  CAST(bbox_maxy AS DOUBLE),
  CAST(grid_x AS INTEGER),
  CAST(grid_y AS INTEGER)
FROM read_parquet(?)
"""


COUNT_SQL = f"SELECT COUNT(*) FROM {TABLE}"

COUNT_BY_TYPE_SQL = f"""
SELECT type, COUNT(*) AS n
FROM {TABLE}
GROUP BY type
ORDER BY type
"""

# Aggregate extent from precomputed per-row boxes; no geometry union.
EXTENT_SQL = f"""
SELECT MIN(bbox_minx), MIN(bbox_miny), MAX(bbox_maxx), MAX(bbox_maxy)
FROM {TABLE}
"""

INDEX_NAMES_SQL = """
SELECT index_name
FROM duckdb_indexes()
WHERE table_name = ?
ORDER BY index_name
"""

SELECT_GEOMETRIES_SQL = f"""
SELECT id, geometry, geometry_simple
FROM {TABLE}
ORDER BY id
"""

# Stages 1 (grid range) and 2 (bbox overlap); stage 3 runs on the STRtree.
VIEWPORT_CANDIDATES_SQL = f"""
SELECT id, osm_id, name, type, tags, bbox_minx, bbox_miny, bbox_maxx, bbox_maxy, grid_x, grid_y
FROM {TABLE}
WHERE grid_x BETWEEN ? AND ?
  AND grid_y BETWEEN ? AND ?
  AND bbox_minx <= ?
  AND bbox_maxx >= ?
  AND bbox_miny <= ?
  AND bbox_maxy >= ?
ORDER BY id
"""

SEARCH_BY_NAME_SQL = f"""
SELECT id, osm_id, name, type, tags, bbox_minx, bbox_miny, bbox_maxx, bbox_maxy
FROM {TABLE}
WHERE name IS NOT NULL
  AND contains(lower(name), ?)
ORDER BY
  CASE
    WHEN lower(name) = ? THEN 0
    WHEN starts_with(lower(name), ?) THEN 1
    ELSE 2
  END,
  name
LIMIT ?
"""
