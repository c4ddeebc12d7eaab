from __future__ import annotations

from pydantic import BaseModel, Field


class StoreSettings(BaseModel):
    # ":memory:" or a file path for the DuckDB database.
    database: str = ":memory:"
    threads: int = Field(default=1, ge=1)
    memory_limit: str = "1GB"
    batch_size: int = Field(default=5000, ge=1)


class OutputTolerances(BaseModel):
    """
    Post-processing simplification tolerance per processing mode (degrees).
    """

    fast: float = Field(default=0.001, ge=0.0)  # ~100m
    balanced: float = Field(default=0.0001, ge=0.0)  # ~10m
    accurate: float = Field(default=0.0, ge=0.0)


class ProcessingSettings(BaseModel):
    meters_per_degree: float = Field(default=111_000.0, gt=0.0)
    grid_cell_degrees: float = Field(default=0.01, gt=0.0)
    ingest_simplify_tolerance: float = Field(default=0.0001, ge=0.0)
    output_tolerance: OutputTolerances = Field(default_factory=OutputTolerances)
    buffer_quad_segs: int = Field(default=8, ge=1)
    reduce_precision_grid: float = Field(default=0.000001, gt=0.0)
    # Grid ranges wider than this usually mean a world-sized viewport.
    max_grid_cells_warning: int = Field(default=10_000, ge=1)


class EngineSettings(BaseModel):
    store: StoreSettings = Field(default_factory=StoreSettings)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
