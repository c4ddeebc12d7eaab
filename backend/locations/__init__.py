"""
Sensitive locations: types, tag classification and OSM element conversion.
"""
