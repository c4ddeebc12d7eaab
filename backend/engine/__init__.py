"""
Spatial store for sensitive locations.

DuckDB holds the rows and their acceleration columns (bbox, grid cell,
simplified WKB); shapely STRtrees answer the exact intersection stage.
`engine.session.SpatialEngine` ties the store to the zone calculator.
"""
