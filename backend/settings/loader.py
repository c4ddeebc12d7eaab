from __future__ import annotations

import os
from pathlib import Path

import yaml

from settings.types import EngineSettings


def config_path() -> Path | None:
    raw = (os.getenv("ZONES_CONFIG") or "").strip()
    return Path(raw) if raw else None


def duckdb_path() -> str | None:
    raw = (os.getenv("ZONES_DUCKDB_PATH") or "").strip()
    return raw or None


def duckdb_threads() -> int | None:
    raw = (os.getenv("ZONES_DUCKDB_THREADS") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except Exception:
            pass
    return None


def duckdb_memory_limit() -> str | None:
    raw = (os.getenv("ZONES_DUCKDB_MEMORY_LIMIT") or "").strip()
    return raw or None


def ingest_batch_size() -> int | None:
    raw = (os.getenv("ZONES_INGEST_BATCH_SIZE") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except Exception:
            pass
    return None


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid settings yaml root: {path}")
    return data


def load_settings(path: Path | None = None) -> EngineSettings:
    """
    Build engine settings from (in increasing priority) defaults, a YAML file, env vars.

    The YAML file is `path` or `$ZONES_CONFIG`; a missing explicit file is an error.
    """
    p = path or config_path()
    data: dict = {}
    if p is not None:
        if not p.exists():
            raise FileNotFoundError(f"Settings file not found: {p}")
        data = _load_yaml(p)

    settings = EngineSettings.model_validate(data)

    store_overrides: dict = {}
    if (db := duckdb_path()) is not None:
        store_overrides["database"] = db
    if (threads := duckdb_threads()) is not None:
        store_overrides["threads"] = threads
    elif "threads" not in (data.get("store") or {}):
        store_overrides["threads"] = max(1, int(os.cpu_count() or 1))
    if (mem := duckdb_memory_limit()) is not None:
        store_overrides["memory_limit"] = mem
    if (batch := ingest_batch_size()) is not None:
        store_overrides["batch_size"] = batch

    if store_overrides:
        settings = settings.model_copy(
            update={"store": settings.store.model_copy(update=store_overrides)}
        )
    return settings
