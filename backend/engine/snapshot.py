from __future__ import annotations

from pathlib import Path

import duckdb

from engine.sql import COLUMNS


def is_remote(locator: str) -> bool:
    return str(locator).split("://", 1)[0].lower() in {"http", "https", "s3", "gs", "az"}


def snapshot_columns(conn: duckdb.DuckDBPyConnection, locator: str) -> dict[str, str]:
    """
    Parquet schema as column name -> DuckDB type name (e.g. "BLOB", "GEOMETRY('OGC:CRS84')").
    """
    return {
        str(r[0]): str(r[1])
        for r in conn.execute(
            "DESCRIBE SELECT * FROM read_parquet(?)", [str(locator)]
        ).fetchall()
    }


def check_snapshot(
    conn: duckdb.DuckDBPyConnection, locator: str
) -> tuple[dict[str, str], str | None]:
    """
    Return `(column_types, None)` when `locator` is a readable snapshot, else
    `({}, reason)`.

    Remote locators rely on DuckDB's httpfs autoloading; any read failure counts
    as "unavailable".
    """
    loc = str(locator or "").strip()
    if not loc:
        return {}, "empty snapshot locator"
    if not is_remote(loc) and not Path(loc).exists():
        return {}, f"snapshot not found: {loc}"
    try:
        cols = snapshot_columns(conn, loc)
    except Exception as e:
        return {}, f"snapshot unreadable: {e}"
    missing = [c for c in COLUMNS if c not in cols]
    if missing:
        return {}, f"snapshot missing columns: {', '.join(missing)}"
    return cols, None
