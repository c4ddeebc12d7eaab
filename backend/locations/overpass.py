from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def read_overpass_elements(path: Path) -> list[dict[str, Any]]:
    """
    Input: Overpass JSON (`out body; >; out skel qt;` or `out geom;`).

    Returns the raw `elements` list; conversion happens at ingestion.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, list):
        return [e for e in data if isinstance(e, dict)]
    if not isinstance(data, dict):
        raise ValueError(f"Invalid Overpass JSON root: {path}")
    elements = data.get("elements") or []
    return [e for e in elements if isinstance(e, dict)]
