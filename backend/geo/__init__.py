"""
Lon/lat geometry helpers: bounding boxes, grid cells, buffer/union, repair, simplification.
"""
