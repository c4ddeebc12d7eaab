from __future__ import annotations

import logging
from pathlib import Path

import duckdb

logger = logging.getLogger(__name__)


def connect(database: str, *, threads: int) -> duckdb.DuckDBPyConnection:
    if database != ":memory:":
        p = Path(database)
        if p.parent and str(p.parent) not in {".", ""}:
            p.parent.mkdir(parents=True, exist_ok=True)
        database = str(p)
    return duckdb.connect(
        database=database, read_only=False, config={"threads": int(threads)}
    )


def configure(conn: duckdb.DuckDBPyConnection, *, memory_limit: str) -> None:
    """
    Best-effort session pragmas; unsupported options are logged and skipped.
    """
    limit = str(memory_limit).replace("'", "''")
    for stmt in (
        f"SET memory_limit = '{limit}'",
        "SET enable_object_cache = true",
    ):
        try:
            conn.execute(stmt)
        except Exception as e:
            logger.warning("DuckDB option not applied (%s): %s", stmt, e)


def load_spatial(conn: duckdb.DuckDBPyConnection) -> None:
    """Load the spatial extension, installing it on first use."""
    try:
        conn.execute("LOAD spatial")
    except duckdb.Error:
        conn.execute("INSTALL spatial")
        conn.execute("LOAD spatial")


def close_quietly(conn: duckdb.DuckDBPyConnection | None) -> None:
    if conn is None:
        return
    try:
        conn.close()
    except Exception:
        pass
